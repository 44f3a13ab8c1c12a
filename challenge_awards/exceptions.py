"""
Exception hierarchy for challenge-awards.

Errors carry the user, month and game they concern.
"""


class ChallengeAwardsError(Exception):
    """Base exception for all challenge-awards errors."""

    def __init__(
        self,
        message: str,
        user_id: str | None = None,
        month_key: str | None = None,
        game_id: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.user_id = user_id
        self.month_key = month_key
        self.game_id = game_id

    def to_dict(self) -> dict:
        """Serialize the error for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "user_id": self.user_id,
            "month_key": self.month_key,
            "game_id": self.game_id,
        }


class InputError(ChallengeAwardsError):
    """Malformed caller input: bad month key, incomplete challenge definition."""

    pass


class DataSourceError(ChallengeAwardsError):
    """Non-retryable failure from the achievement data service."""

    pass


class TransientDataSourceError(DataSourceError):
    """Timeout, connection or rate-limit failure worth retrying."""

    pass


class InvariantViolation(ChallengeAwardsError):
    """A write would have lowered a recorded tier."""

    pass
