"""
RetroAchievements API client for fetching members' game progress.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable

import requests

from challenge_awards.exceptions import DataSourceError, TransientDataSourceError
from challenge_awards.models import AchievementUnlockSet
from challenge_awards.retry import retry_with_backoff

logger = logging.getLogger(__name__)

RA_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}


def parse_ra_timestamp(value: str | None) -> datetime | None:
    """
    Parse a RetroAchievements unlock timestamp.

    The API reports unlock times as 'YYYY-MM-DD HH:MM:SS' in UTC.

    Returns:
        Timezone-aware UTC datetime, or None for a missing value
    """
    if not value:
        return None
    try:
        parsed = datetime.strptime(value.strip(), RA_TIMESTAMP_FORMAT)
    except ValueError:
        # Some mirrors send ISO-8601 with a 'T' separator
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_game_progress(game_id: str, payload: dict) -> AchievementUnlockSet:
    """
    Convert an API_GetGameInfoAndUserProgress response into an AchievementUnlockSet.

    Args:
        game_id: The game the response was requested for
        payload: Decoded JSON response

    Returns:
        AchievementUnlockSet with every achievement id mapped to its unlock time

    Raises:
        DataSourceError: If the payload is not the expected shape
    """
    if not isinstance(payload, dict):
        raise DataSourceError(
            f"Unexpected progress payload for game {game_id}: {type(payload).__name__}",
            game_id=str(game_id),
        )

    achievements = payload.get("Achievements") or {}
    # The API sends an empty list instead of an object for games with no achievements
    if isinstance(achievements, list):
        achievements = {}

    earned: dict[str, datetime | None] = {}
    try:
        for achievement_id, data in achievements.items():
            unlocked = data.get("DateEarned") or data.get("DateEarnedHardcore")
            earned[str(achievement_id)] = parse_ra_timestamp(unlocked)
    except (AttributeError, ValueError) as e:
        raise DataSourceError(
            f"Malformed achievement data for game {game_id}: {e}",
            game_id=str(game_id),
        )

    total = payload.get("NumAchievements")
    total = int(total) if total is not None else len(earned)

    return AchievementUnlockSet(
        game_id=str(game_id),
        earned=earned,
        total_achievement_count=total,
        title=payload.get("Title"),
    )


class RetroAchievementsClient:
    """Client for the RetroAchievements web API."""

    BASE_URL = "https://retroachievements.org/API"

    def __init__(
        self,
        username: str,
        api_key: str,
        base_url: str | None = None,
        min_interval: float = 1.2,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_base_delay: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the RetroAchievements client.

        Args:
            username: Account name the web API key belongs to
            api_key: RetroAchievements web API key
            base_url: Override the API root
            min_interval: Minimum seconds between consecutive requests
            timeout: Per-request timeout in seconds
            max_retries: Retries for transient failures
            retry_base_delay: Backoff before the first retry
            sleep: Sleep function (injected by tests)
            clock: Monotonic clock (injected by tests)
        """
        self.username = username
        self.api_key = api_key
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.min_interval = min_interval
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._sleep = sleep
        self._clock = clock
        self._last_request_at: float | None = None
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": "challenge-awards/0.1.0"})

    def _throttle(self) -> None:
        """Wait until min_interval has passed since the previous request."""
        if self._last_request_at is not None:
            elapsed = self._clock() - self._last_request_at
            if elapsed < self.min_interval:
                self._sleep(self.min_interval - elapsed)
        self._last_request_at = self._clock()

    def _get(self, endpoint: str, params: dict, user_id: str | None = None, game_id: str | None = None):
        self._throttle()

        url = f"{self.base_url}/{endpoint}"
        query = {"y": self.api_key, "z": self.username, **params}

        try:
            response = self.session.get(url, params=query, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientDataSourceError(
                f"Request to {endpoint} failed: {e}", user_id=user_id, game_id=game_id
            )

        if response.status_code == 401:
            raise DataSourceError(
                "Authentication failed. Check RA_USERNAME and RA_API_KEY are valid.",
                user_id=user_id,
                game_id=game_id,
            )
        elif response.status_code == 404:
            raise DataSourceError(
                f"User '{user_id}' or game '{game_id}' not found on RetroAchievements.",
                user_id=user_id,
                game_id=game_id,
            )
        elif response.status_code in TRANSIENT_STATUS_CODES:
            raise TransientDataSourceError(
                f"RetroAchievements API unavailable or rate limited: {response.status_code}",
                user_id=user_id,
                game_id=game_id,
            )
        elif not response.ok:
            raise DataSourceError(
                f"RetroAchievements API error: {response.status_code} - {response.text}",
                user_id=user_id,
                game_id=game_id,
            )

        try:
            return response.json()
        except ValueError:
            raise DataSourceError(
                f"Invalid JSON from {endpoint}", user_id=user_id, game_id=game_id
            )

    def _fetch_game_progress(self, user_id: str, game_id: str) -> dict:
        return self._get(
            "API_GetGameInfoAndUserProgress.php",
            {"u": user_id, "g": game_id},
            user_id=user_id,
            game_id=game_id,
        )

    def get_user_game_progress(self, user_id: str, game_id: str) -> AchievementUnlockSet:
        """
        Fetch a user's all-time unlock state for one game.

        Transient failures are retried with exponential backoff.

        Args:
            user_id: RetroAchievements username
            game_id: RetroAchievements game id

        Returns:
            AchievementUnlockSet for the game

        Raises:
            TransientDataSourceError: If retries are exhausted
            DataSourceError: On any non-retryable API failure
        """
        payload = retry_with_backoff(
            self._fetch_game_progress,
            user_id,
            str(game_id),
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            sleep=self._sleep,
        )
        try:
            return normalize_game_progress(str(game_id), payload)
        except DataSourceError as e:
            e.user_id = user_id
            raise
