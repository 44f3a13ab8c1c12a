"""
Data model for monthly challenges and per-user award progress.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum

from challenge_awards.exceptions import InputError
from challenge_awards.window_resolver import parse_month_key


class Tier(IntEnum):
    """Award tier for one track of one month. Ordered: higher is better."""

    NONE = 0
    PARTICIPATION = 1
    BEATEN = 2
    MASTERY = 3

    @property
    def label(self) -> str:
        return self.name.capitalize()


class Track(str, Enum):
    """Which challenge of the month a result belongs to."""

    MAIN = "main"
    SHADOW = "shadow"


@dataclass(frozen=True)
class TrackDefinition:
    """Game and award criteria for one track of a challenge."""

    game_id: str
    total_achievement_count: int
    progression_achievement_ids: frozenset[str] = frozenset()
    win_achievement_ids: frozenset[str] = frozenset()
    game_title: str | None = None

    def __post_init__(self):
        if not self.game_id or not str(self.game_id).strip():
            raise InputError("Track definition is missing a game id")
        if self.total_achievement_count is None or self.total_achievement_count < 0:
            raise InputError(
                f"Invalid total achievement count for game {self.game_id}: "
                f"{self.total_achievement_count}",
                game_id=str(self.game_id),
            )
        # Ids arrive as ints from some configs; normalize to the string form the API uses
        object.__setattr__(self, "game_id", str(self.game_id))
        object.__setattr__(
            self,
            "progression_achievement_ids",
            frozenset(str(i) for i in self.progression_achievement_ids),
        )
        object.__setattr__(
            self,
            "win_achievement_ids",
            frozenset(str(i) for i in self.win_achievement_ids),
        )

    @property
    def qualifying_achievement_ids(self) -> frozenset[str]:
        """Achievements that count toward Beaten."""
        return self.progression_achievement_ids | self.win_achievement_ids


@dataclass(frozen=True)
class Challenge:
    """A month's challenge: the main track plus an optional shadow track."""

    month_key: str
    main: TrackDefinition
    shadow: TrackDefinition | None = None
    shadow_revealed: bool = False

    def __post_init__(self):
        parse_month_key(self.month_key)
        if self.main is None:
            raise InputError(
                "Challenge is missing its main track", month_key=self.month_key
            )

    def definition_for(self, track: Track) -> TrackDefinition | None:
        return self.main if track is Track.MAIN else self.shadow


@dataclass(frozen=True)
class AchievementUnlockSet:
    """
    A user's all-time unlock state for one game.

    `earned` maps every achievement id of the game to the time it was earned,
    or None if the user has not earned it.
    """

    game_id: str
    earned: dict[str, datetime | None]
    total_achievement_count: int
    title: str | None = None

    @property
    def earned_ids(self) -> set[str]:
        return {aid for aid, ts in self.earned.items() if ts is not None}


@dataclass(frozen=True)
class TrackClassification:
    """Result of classifying one track for one user."""

    tier: Tier
    earned_in_window: int = 0
    earned_all_time: int = 0
    total_achievements: int = 0

    @property
    def percentage(self) -> float:
        """Share of the game earned inside the window, in percent."""
        if self.total_achievements <= 0:
            return 0.0
        return round(self.earned_in_window / self.total_achievements * 100, 2)


@dataclass
class UserChallengeProgress:
    """Best recorded result for one (user, month, track) key."""

    user_id: str
    month_key: str
    track: Track
    tier: Tier = Tier.NONE
    points: int = 0
    achievements_in_window: int = 0
    total_achievements: int = 0
    percentage: float = 0.0
    game_title: str | None = None
    updated_at: str | None = None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "month_key": self.month_key,
            "track": self.track.value,
            "tier": self.tier.label,
            "points": self.points,
            "achievements_in_window": self.achievements_in_window,
            "total_achievements": self.total_achievements,
            "percentage": self.percentage,
            "game_title": self.game_title,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class MergeResult:
    """Outcome of merging a candidate tier into the progress store."""

    tier: Tier
    points: int
    previous_tier: Tier = Tier.NONE

    @property
    def upgraded(self) -> bool:
        return self.tier > self.previous_tier


@dataclass
class TrackResult:
    """What a recomputation produced for one track, ready for display."""

    track: Track
    tier: Tier
    points: int
    classification: TrackClassification | None = None
    upgraded: bool = False
    hidden: bool = False
    game_id: str | None = None
    game_title: str | None = None

    def to_dict(self) -> dict:
        data = {
            "track": self.track.value,
            "tier": self.tier.label,
            "points": self.points,
            "upgraded": self.upgraded,
            "hidden": self.hidden,
            "game_id": self.game_id,
            "game_title": self.game_title,
        }
        if self.classification is not None:
            data["achievements_in_window"] = self.classification.earned_in_window
            data["total_achievements"] = self.classification.total_achievements
            data["percentage"] = self.classification.percentage
        return data


@dataclass
class LiveResult:
    """Live-mode outcome for one user and the current month."""

    user_id: str
    month_key: str
    tracks: dict[Track, TrackResult] = field(default_factory=dict)

    @property
    def total_points(self) -> int:
        return sum(r.points for r in self.tracks.values() if not r.hidden)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "month_key": self.month_key,
            "total_points": self.total_points,
            "tracks": {t.value: r.to_dict() for t, r in self.tracks.items()},
        }
