"""
Recompute members' challenge awards from their achievement data.

Two modes share the fetch -> classify -> merge pipeline:

- Live: one user, the current month, run inside a single request.
- Backfill: many users across past months, serialized and rate limited,
  tolerant of per-pair failures and safe to interrupt between pairs.
"""

import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone, tzinfo
from typing import Callable, Iterable, Protocol

from challenge_awards.award_classifier import classify_track
from challenge_awards.exceptions import ChallengeAwardsError, DataSourceError, InputError
from challenge_awards.models import (
    AchievementUnlockSet,
    Challenge,
    LiveResult,
    Tier,
    Track,
    TrackClassification,
    TrackDefinition,
    TrackResult,
)
from challenge_awards.storage import ProgressStorage
from challenge_awards.window_resolver import (
    ChallengeWindow,
    month_key_for,
    parse_month_key,
    window_for_month_key,
)

logger = logging.getLogger(__name__)

SHADOW_POLICY_SKIP = "skip"
SHADOW_POLICY_COMPUTE_HIDDEN = "compute_hidden"


class AchievementDataProvider(Protocol):
    def get_user_game_progress(self, user_id: str, game_id: str) -> AchievementUnlockSet: ...


@dataclass
class BatchProgress:
    """Running counters for a backfill, handed to progress callbacks."""

    total_count: int = 0
    processed_count: int = 0
    updated_count: int = 0
    errored_count: int = 0
    skipped_count: int = 0
    stopped: bool = False
    failures: list[tuple[str, str, str]] = field(default_factory=list)

    @property
    def completed_count(self) -> int:
        return self.processed_count + self.errored_count + self.skipped_count

    def snapshot(self) -> "BatchProgress":
        return replace(self, failures=list(self.failures))

    def to_dict(self) -> dict:
        return {
            "total": self.total_count,
            "processed": self.processed_count,
            "updated": self.updated_count,
            "errored": self.errored_count,
            "skipped": self.skipped_count,
            "stopped": self.stopped,
            "failures": [
                {"user_id": u, "month_key": m, "error": err} for u, m, err in self.failures
            ],
        }


@dataclass
class _ScoredTrack:
    track: Track
    definition: TrackDefinition
    classification: TrackClassification
    title: str | None
    hidden: bool


class ChallengeRecomputer:
    """Drives classification and upgrade-only merging of challenge awards."""

    def __init__(
        self,
        storage: ProgressStorage,
        provider: AchievementDataProvider,
        tz: tzinfo = timezone.utc,
        shadow_policy: str = SHADOW_POLICY_SKIP,
        user_delay: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] | None = None,
    ):
        """
        Initialize the recomputer.

        Args:
            storage: Challenge catalog and progress store
            provider: Source of per-user achievement data
            tz: Timezone in which challenge months are evaluated
            shadow_policy: 'skip' or 'compute_hidden' for unrevealed shadow tracks
            user_delay: Seconds to pause between users in backfill
            sleep: Sleep function (injected by tests)
            now: Clock returning the current time (injected by tests)
        """
        if shadow_policy not in (SHADOW_POLICY_SKIP, SHADOW_POLICY_COMPUTE_HIDDEN):
            raise InputError(f"Unknown shadow policy: {shadow_policy}")

        self.storage = storage
        self.provider = provider
        self.tz = tz
        self.shadow_policy = shadow_policy
        self.user_delay = user_delay
        self._sleep = sleep
        self._now = now or (lambda: datetime.now(self.tz))

    def current_month_key(self) -> str:
        return month_key_for(self._now().astimezone(self.tz))

    def _resolve_user(self, user_id: str) -> str:
        stored = self.storage.get_user(user_id)
        if stored is None:
            raise InputError(f"User '{user_id}' is not registered", user_id=user_id)
        return stored

    def _tracks_to_score(self, challenge: Challenge) -> list[tuple[Track, TrackDefinition, bool]]:
        """Tracks that should be classified, with whether each result is hidden."""
        tracks = [(Track.MAIN, challenge.main, False)]
        if challenge.shadow is not None:
            if challenge.shadow_revealed:
                tracks.append((Track.SHADOW, challenge.shadow, False))
            elif self.shadow_policy == SHADOW_POLICY_COMPUTE_HIDDEN:
                tracks.append((Track.SHADOW, challenge.shadow, True))
        return tracks

    def _score_challenge(
        self, user_id: str, challenge: Challenge, window: ChallengeWindow
    ) -> list[_ScoredTrack]:
        """Fetch and classify every scorable track. Nothing is written."""
        scored = []
        for track, definition, hidden in self._tracks_to_score(challenge):
            try:
                unlocks = self.provider.get_user_game_progress(user_id, definition.game_id)
            except ChallengeAwardsError as e:
                e.user_id = e.user_id or user_id
                e.month_key = e.month_key or challenge.month_key
                e.game_id = e.game_id or definition.game_id
                raise
            classification = classify_track(unlocks, definition, window, track)
            scored.append(
                _ScoredTrack(
                    track=track,
                    definition=definition,
                    classification=classification,
                    title=definition.game_title or unlocks.title,
                    hidden=hidden,
                )
            )
        return scored

    def _merge(self, user_id: str, month_key: str, scored: _ScoredTrack) -> TrackResult:
        merged = self.storage.merge_upsert(
            user_id, month_key, scored.track, scored.classification, game_title=scored.title
        )
        if merged.upgraded:
            logger.info(
                f"{user_id} {month_key} {scored.track.value}: "
                f"{merged.previous_tier.label} -> {merged.tier.label}"
            )
        return TrackResult(
            track=scored.track,
            tier=merged.tier,
            points=merged.points,
            classification=scored.classification,
            upgraded=merged.upgraded,
            hidden=scored.hidden,
            game_id=scored.definition.game_id,
            game_title=scored.title,
        )

    def recompute_live(self, user_id: str, month_key: str | None = None) -> LiveResult:
        """
        Recompute one user's awards for the current (or given) month.

        All tracks are fetched and classified before anything is merged, so a
        failure while fetching leaves the store untouched.

        Args:
            user_id: Registered member name
            month_key: Month to recompute; defaults to the current month

        Returns:
            LiveResult with the stored tier and points per track

        Raises:
            InputError: Unknown user or malformed month key
            DataSourceError: The achievement service could not be reached
        """
        user_id = self._resolve_user(user_id)
        month_key = month_key or self.current_month_key()
        window = window_for_month_key(month_key, self.tz)

        result = LiveResult(user_id=user_id, month_key=month_key)
        challenge = self.storage.get_challenge(month_key)
        if challenge is None:
            logger.info(f"No challenge configured for {month_key}")
            result.tracks[Track.MAIN] = TrackResult(Track.MAIN, Tier.NONE, 0)
            return result

        try:
            scored_tracks = self._score_challenge(user_id, challenge, window)
        except DataSourceError as e:
            logger.error(
                f"Live recompute failed for {user_id} {month_key} game {e.game_id}: {e}"
            )
            raise

        for scored in scored_tracks:
            result.tracks[scored.track] = self._merge(user_id, month_key, scored)

        if challenge.shadow is not None and Track.SHADOW not in result.tracks:
            # Unrevealed and skipped: reported as hidden with nothing scored
            result.tracks[Track.SHADOW] = TrackResult(
                Track.SHADOW, Tier.NONE, 0, hidden=True
            )

        logger.info(
            f"Live recompute for {user_id} {month_key}: "
            + ", ".join(f"{t.value}={r.tier.label}" for t, r in result.tracks.items())
        )
        return result

    def _backfill_challenges(
        self,
        month_keys: Iterable[str] | None,
        from_key: str | None,
        to_key: str | None,
    ) -> list[Challenge]:
        current = self.current_month_key()
        challenges = self.storage.list_challenges(from_key, to_key)
        if month_keys is not None:
            wanted = set(month_keys)
            for key in wanted:
                parse_month_key(key)
            challenges = [c for c in challenges if c.month_key in wanted]
        # The running month belongs to live mode
        return [c for c in challenges if c.month_key < current]

    def run_backfill(
        self,
        user_ids: Iterable[str] | None = None,
        month_keys: Iterable[str] | None = None,
        from_key: str | None = None,
        to_key: str | None = None,
        force: bool = False,
        dry_run: bool = False,
        on_progress: Callable[[BatchProgress], None] | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> BatchProgress:
        """
        Recompute past months for many users.

        Each (user, month) pair is merged and marked processed independently,
        so stopping between pairs never leaves partial state behind. A pair
        whose shadow track was skipped because it is unrevealed stays
        unprocessed, so the run after the reveal scores the shadow track.

        Args:
            user_ids: Users to process; defaults to every registered user
            month_keys: Specific months to process; defaults to all past months
            from_key: First month of the range (YYYY-MM, inclusive)
            to_key: Last month of the range (YYYY-MM, inclusive)
            force: Reprocess pairs already marked processed
            dry_run: Classify and count without writing anything
            on_progress: Called with a BatchProgress snapshot after every pair
            should_stop: Checked before every pair; returning True ends the run

        Returns:
            Final BatchProgress
        """
        if user_ids is None:
            users = self.storage.list_users()
        else:
            users = [self._resolve_user(u) for u in user_ids]
        challenges = self._backfill_challenges(month_keys, from_key, to_key)

        progress = BatchProgress(total_count=len(users) * len(challenges))
        logger.info(
            f"Starting backfill: {len(users)} users x {len(challenges)} months"
            f"{' (DRY RUN)' if dry_run else ''}"
        )

        for index, user_id in enumerate(users):
            if index > 0 and challenges:
                self._sleep(self.user_delay)

            for challenge in challenges:
                if should_stop is not None and should_stop():
                    progress.stopped = True
                    break
                self._backfill_pair(user_id, challenge, progress, force, dry_run)
                if on_progress is not None:
                    on_progress(progress.snapshot())

            if progress.stopped:
                logger.info("Backfill stopped before completion")
                break

        logger.info(
            f"Backfill finished: {progress.processed_count} processed, "
            f"{progress.updated_count} updated, {progress.errored_count} errored, "
            f"{progress.skipped_count} skipped of {progress.total_count}"
        )
        return progress

    def _backfill_pair(
        self,
        user_id: str,
        challenge: Challenge,
        progress: BatchProgress,
        force: bool,
        dry_run: bool,
    ) -> None:
        month_key = challenge.month_key

        if not force and self.storage.is_processed(user_id, month_key):
            progress.skipped_count += 1
            return

        try:
            window = window_for_month_key(month_key, self.tz)
            scored_tracks = self._score_challenge(user_id, challenge, window)

            if dry_run:
                upgraded = any(
                    self._would_upgrade(user_id, month_key, s) for s in scored_tracks
                )
            else:
                results = [self._merge(user_id, month_key, s) for s in scored_tracks]
                upgraded = any(r.upgraded for r in results)
                if self._shadow_pending(challenge, scored_tracks):
                    logger.debug(
                        f"{user_id} {month_key}: shadow not revealed, leaving unprocessed"
                    )
                else:
                    self.storage.mark_processed(user_id, month_key)
        except ChallengeAwardsError as e:
            logger.warning(
                f"Backfill failed for {user_id} {month_key} (game {e.game_id}): {e}"
            )
            progress.errored_count += 1
            progress.failures.append((user_id, month_key, str(e)))
            return
        except Exception as e:
            logger.exception(f"Unexpected error backfilling {user_id} {month_key}")
            progress.errored_count += 1
            progress.failures.append((user_id, month_key, f"{type(e).__name__}: {e}"))
            return

        progress.processed_count += 1
        if upgraded:
            progress.updated_count += 1

    def _shadow_pending(self, challenge: Challenge, scored_tracks: list[_ScoredTrack]) -> bool:
        """True when the challenge has a shadow track that was not scored."""
        return challenge.shadow is not None and all(
            s.track is not Track.SHADOW for s in scored_tracks
        )

    def _would_upgrade(self, user_id: str, month_key: str, scored: _ScoredTrack) -> bool:
        stored = self.storage.get_progress(user_id, month_key, scored.track)
        current = stored.tier if stored else Tier.NONE
        return scored.classification.tier > current

    def find_missing_months(self, user_id: str) -> list[str]:
        """
        Months whose results have never been computed for a user.

        A month is missing when its main result is absent, or when its shadow
        track is revealed and the shadow result is absent.
        """
        user_id = self._resolve_user(user_id)
        missing = []
        for challenge in self.storage.list_challenges():
            month_key = challenge.month_key
            has_main = self.storage.get_progress(user_id, month_key, Track.MAIN) is not None
            needs_shadow = challenge.shadow is not None and challenge.shadow_revealed
            has_shadow = (
                self.storage.get_progress(user_id, month_key, Track.SHADOW) is not None
            )
            if not has_main or (needs_shadow and not has_shadow):
                missing.append(month_key)
        return missing

    def reset_user(self, user_id: str) -> int:
        """Clear a user's processed markers so the next backfill redoes them."""
        user_id = self._resolve_user(user_id)
        cleared = self.storage.reset_processed(user_id)
        logger.info(f"Reset {cleared} processed months for {user_id}")
        return cleared

