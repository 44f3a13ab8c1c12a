"""
Tests for live and backfill recomputation.
"""

import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from challenge_awards.exceptions import DataSourceError, InputError, TransientDataSourceError
from challenge_awards.models import (
    AchievementUnlockSet,
    Challenge,
    Tier,
    Track,
    TrackClassification,
    TrackDefinition,
)
from challenge_awards.recompute import ChallengeRecomputer
from challenge_awards.storage import ProgressStorage

UTC = timezone.utc
NOW = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)


def at(month: int, day: int = 10, year: int = 2025) -> datetime:
    return datetime(year, month, day, 12, 0, tzinfo=UTC)


class FakeProvider:
    """In-memory achievement data keyed by (user, game)."""

    def __init__(self):
        self.data: dict[tuple[str, str], dict] = {}
        self.failures: dict[tuple[str, str], Exception] = {}
        self.calls: list[tuple[str, str]] = []

    def set_unlocks(self, user_id, game_id, earned, ids):
        self.data[(user_id.lower(), game_id)] = {aid: earned.get(aid) for aid in ids}

    def get_user_game_progress(self, user_id, game_id):
        self.calls.append((user_id, game_id))
        key = (user_id.lower(), game_id)
        if key in self.failures:
            raise self.failures[key]
        earned = self.data.get(key, {})
        return AchievementUnlockSet(
            game_id=game_id, earned=earned, total_achievement_count=len(earned), title=f"Game {game_id}"
        )


MAIN_IDS = ["A", "B", "C"] + [f"M{i}" for i in range(7)]
SHADOW_IDS = [f"S{i}" for i in range(12)]


def make_challenge(month_key: str, revealed: bool = True, main_game: str = "100", shadow_game: str = "200"):
    return Challenge(
        month_key=month_key,
        main=TrackDefinition(
            game_id=main_game,
            total_achievement_count=10,
            progression_achievement_ids=frozenset({"A", "B"}),
            win_achievement_ids=frozenset({"C"}),
        ),
        shadow=TrackDefinition(
            game_id=shadow_game,
            game_title="Shadow Game",
            total_achievement_count=12,
            progression_achievement_ids=frozenset({"S0", "S1"}),
            win_achievement_ids=frozenset({"S2"}),
        ),
        shadow_revealed=revealed,
    )


@pytest.fixture
def storage():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield ProgressStorage(Path(tmpdir) / "progress.db")


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def recomputer(storage, provider, sleeps):
    return ChallengeRecomputer(
        storage, provider, user_delay=2.0, sleep=sleeps.append, now=lambda: NOW
    )


class TestLiveMode:
    """Tests for recompute_live."""

    def test_beaten_main_and_shadow(self, storage, provider, recomputer):
        storage.register_user("player1")
        storage.save_challenge(make_challenge("2025-03"))
        provider.set_unlocks("player1", "100", {"A": at(3), "B": at(3), "C": at(3)}, MAIN_IDS)
        provider.set_unlocks("player1", "200", {"S0": at(3), "S1": at(3), "S2": at(3)}, SHADOW_IDS)

        result = recomputer.recompute_live("player1")

        assert result.month_key == "2025-03"
        assert result.tracks[Track.MAIN].tier == Tier.BEATEN
        assert result.tracks[Track.MAIN].points == 4
        assert result.tracks[Track.SHADOW].tier == Tier.BEATEN
        assert result.tracks[Track.SHADOW].game_title == "Shadow Game"
        assert result.total_points == 8
        assert storage.get_progress("player1", "2025-03", Track.MAIN).tier == Tier.BEATEN

    def test_mastery(self, storage, provider, recomputer):
        storage.register_user("player1")
        storage.save_challenge(make_challenge("2025-03"))
        provider.set_unlocks("player1", "100", {aid: at(3) for aid in MAIN_IDS}, MAIN_IDS)

        result = recomputer.recompute_live("player1")

        assert result.tracks[Track.MAIN].tier == Tier.MASTERY
        assert result.tracks[Track.MAIN].points == 7
        assert result.tracks[Track.SHADOW].tier == Tier.NONE

    def test_no_challenge_is_none_without_error(self, storage, provider, recomputer):
        storage.register_user("player1")

        result = recomputer.recompute_live("player1")

        assert result.tracks[Track.MAIN].tier == Tier.NONE
        assert result.total_points == 0
        assert provider.calls == []

    def test_unregistered_user(self, recomputer):
        with pytest.raises(InputError):
            recomputer.recompute_live("stranger")

    def test_invalid_month_key(self, storage, recomputer):
        storage.register_user("player1")
        with pytest.raises(InputError):
            recomputer.recompute_live("player1", "March")

    def test_unrevealed_shadow_skipped_by_default(self, storage, provider, recomputer):
        storage.register_user("player1")
        storage.save_challenge(make_challenge("2025-03", revealed=False))
        provider.set_unlocks("player1", "200", {"S0": at(3), "S1": at(3), "S2": at(3)}, SHADOW_IDS)

        result = recomputer.recompute_live("player1")

        shadow = result.tracks[Track.SHADOW]
        assert shadow.tier == Tier.NONE
        assert shadow.hidden is True
        assert ("player1", "200") not in provider.calls
        assert storage.get_progress("player1", "2025-03", Track.SHADOW) is None

    def test_unrevealed_shadow_computed_hidden(self, storage, provider):
        recomputer = ChallengeRecomputer(
            storage, provider, shadow_policy="compute_hidden", sleep=lambda s: None, now=lambda: NOW
        )
        storage.register_user("player1")
        storage.save_challenge(make_challenge("2025-03", revealed=False))
        provider.set_unlocks("player1", "200", {"S0": at(3), "S1": at(3), "S2": at(3)}, SHADOW_IDS)

        result = recomputer.recompute_live("player1")

        shadow = result.tracks[Track.SHADOW]
        assert shadow.tier == Tier.BEATEN
        assert shadow.hidden is True
        assert result.total_points == 0
        assert storage.get_progress("player1", "2025-03", Track.SHADOW).tier == Tier.BEATEN

    def test_unknown_shadow_policy(self, storage, provider):
        with pytest.raises(InputError):
            ChallengeRecomputer(storage, provider, shadow_policy="sometimes")

    def test_fetch_failure_applies_no_partial_merge(self, storage, provider, recomputer):
        storage.register_user("player1")
        storage.save_challenge(make_challenge("2025-03"))
        provider.set_unlocks("player1", "100", {"A": at(3)}, MAIN_IDS)
        provider.failures[("player1", "200")] = TransientDataSourceError("timeout")

        with pytest.raises(DataSourceError) as exc_info:
            recomputer.recompute_live("player1")

        assert exc_info.value.game_id == "200"
        assert exc_info.value.user_id == "player1"
        assert storage.get_user_progress("player1") == []

    def test_never_downgrades(self, storage, provider, recomputer):
        storage.register_user("player1")
        storage.save_challenge(make_challenge("2025-03"))
        storage.merge_upsert(
            "player1", "2025-03", Track.MAIN, TrackClassification(tier=Tier.BEATEN, total_achievements=10)
        )
        provider.set_unlocks("player1", "100", {"M0": at(3)}, MAIN_IDS)

        result = recomputer.recompute_live("player1")

        assert result.tracks[Track.MAIN].tier == Tier.BEATEN
        assert result.tracks[Track.MAIN].upgraded is False

    def test_case_insensitive_user(self, storage, provider, recomputer):
        storage.register_user("Player1")
        storage.save_challenge(make_challenge("2025-03"))

        result = recomputer.recompute_live("PLAYER1")

        assert result.user_id == "Player1"


class TestBackfill:
    """Tests for run_backfill."""

    @pytest.fixture(autouse=True)
    def seed(self, storage, provider):
        storage.register_user("player1")
        storage.register_user("player2")
        for key in ("2025-01", "2025-02", "2025-03"):
            storage.save_challenge(make_challenge(key))
        provider.set_unlocks("player1", "100", {"A": at(1), "B": at(1), "C": at(1)}, MAIN_IDS)
        provider.set_unlocks("player2", "100", {"M0": at(2)}, MAIN_IDS)

    def test_processes_past_months_only(self, storage, provider, recomputer):
        progress = recomputer.run_backfill()

        assert progress.total_count == 4
        assert progress.processed_count == 4
        assert progress.errored_count == 0
        assert storage.get_progress("player1", "2025-01", Track.MAIN).tier == Tier.BEATEN
        assert storage.get_progress("player2", "2025-02", Track.MAIN).tier == Tier.PARTICIPATION
        assert storage.get_progress("player1", "2025-03", Track.MAIN) is None
        assert storage.is_processed("player1", "2025-01")

    def test_updated_count(self, recomputer):
        progress = recomputer.run_backfill()

        # player1 Jan beaten, player2 Feb participation
        assert progress.updated_count == 2

    def test_processed_pairs_are_skipped(self, storage, provider, recomputer):
        recomputer.run_backfill()
        calls_after_first = len(provider.calls)

        progress = recomputer.run_backfill()

        assert progress.skipped_count == 4
        assert progress.processed_count == 0
        assert len(provider.calls) == calls_after_first

    def test_force_reprocesses(self, recomputer):
        recomputer.run_backfill()

        progress = recomputer.run_backfill(force=True)

        assert progress.processed_count == 4
        assert progress.updated_count == 0

    def test_reset_user_forces_reprocessing(self, recomputer):
        recomputer.run_backfill()

        assert recomputer.reset_user("player1") == 2
        progress = recomputer.run_backfill()

        assert progress.processed_count == 2
        assert progress.skipped_count == 2

    def test_single_user(self, storage, recomputer):
        progress = recomputer.run_backfill(user_ids=["PLAYER2"])

        assert progress.total_count == 2
        assert storage.get_progress("player1", "2025-01", Track.MAIN) is None

    def test_unknown_user_fails_fast(self, recomputer):
        with pytest.raises(InputError):
            recomputer.run_backfill(user_ids=["ghost"])

    def test_month_range(self, storage, recomputer):
        progress = recomputer.run_backfill(from_key="2025-02", to_key="2025-02")

        assert progress.total_count == 2
        assert storage.get_progress("player1", "2025-01", Track.MAIN) is None

    def test_month_keys(self, recomputer):
        progress = recomputer.run_backfill(month_keys=["2025-01"])
        assert progress.total_count == 2

    def test_failures_do_not_abort_batch(self, storage, provider, recomputer):
        provider.failures[("player1", "100")] = TransientDataSourceError("rate limited")

        progress = recomputer.run_backfill()

        assert progress.errored_count == 2
        assert progress.processed_count == 2
        assert progress.failures[0][:2] == ("player1", "2025-01")
        assert not storage.is_processed("player1", "2025-01")
        assert storage.is_processed("player2", "2025-01")

    def test_failed_pairs_retried_next_run(self, provider, recomputer):
        provider.failures[("player1", "100")] = TransientDataSourceError("rate limited")
        recomputer.run_backfill()
        del provider.failures[("player1", "100")]

        progress = recomputer.run_backfill()

        assert progress.processed_count == 2
        assert progress.skipped_count == 2

    def test_progress_snapshots(self, recomputer):
        snapshots = []

        recomputer.run_backfill(on_progress=snapshots.append)

        assert [s.completed_count for s in snapshots] == [1, 2, 3, 4]
        assert all(s.total_count == 4 for s in snapshots)

    def test_delay_between_users(self, recomputer, sleeps):
        recomputer.run_backfill()
        assert sleeps == [2.0]

    def test_stop_between_pairs(self, storage, recomputer):
        snapshots = []

        progress = recomputer.run_backfill(
            on_progress=snapshots.append, should_stop=lambda: len(snapshots) >= 1
        )

        assert progress.stopped is True
        assert progress.processed_count == 1
        assert storage.is_processed("player1", "2025-01")
        assert not storage.is_processed("player1", "2025-02")

    def test_dry_run_writes_nothing(self, storage, recomputer):
        progress = recomputer.run_backfill(dry_run=True)

        assert progress.processed_count == 4
        assert progress.updated_count == 2
        assert storage.get_user_progress("player1") == []
        assert not storage.is_processed("player1", "2025-01")

    def test_backfill_never_downgrades(self, storage, recomputer):
        storage.merge_upsert(
            "player2", "2025-02", Track.MAIN, TrackClassification(tier=Tier.BEATEN, total_achievements=10)
        )

        recomputer.run_backfill()

        record = storage.get_progress("player2", "2025-02", Track.MAIN)
        assert record.tier == Tier.BEATEN
        assert record.points == 4

    def test_unrevealed_shadow_month_stays_unprocessed(self, storage, provider, recomputer):
        storage.save_challenge(make_challenge("2024-12", revealed=False))
        december = {s: at(12, year=2024) for s in ("S0", "S1", "S2")}
        provider.set_unlocks("player1", "200", december, SHADOW_IDS)

        recomputer.run_backfill(user_ids=["player1"], month_keys=["2024-12"])

        assert not storage.is_processed("player1", "2024-12")
        assert storage.get_progress("player1", "2024-12", Track.MAIN) is not None
        assert storage.get_progress("player1", "2024-12", Track.SHADOW) is None

        storage.reveal_shadow("2024-12")
        progress = recomputer.run_backfill(user_ids=["player1"], month_keys=["2024-12"])

        assert progress.processed_count == 1
        assert storage.is_processed("player1", "2024-12")
        assert storage.get_progress("player1", "2024-12", Track.SHADOW).tier == Tier.BEATEN

    def test_shadow_tracks_backfilled(self, storage, provider, recomputer):
        provider.set_unlocks("player1", "200", {s: at(1) for s in SHADOW_IDS}, SHADOW_IDS)

        recomputer.run_backfill(user_ids=["player1"])

        # Full completion, but shadow tops out at Beaten
        shadow = storage.get_progress("player1", "2025-01", Track.SHADOW)
        assert shadow.tier == Tier.BEATEN
        assert shadow.points == 4


class TestMissingMonths:
    """Tests for find_missing_months."""

    def test_missing_main_and_shadow(self, storage, recomputer):
        storage.register_user("player1")
        storage.save_challenge(make_challenge("2025-01"))
        storage.save_challenge(make_challenge("2025-02"))
        storage.save_challenge(make_challenge("2025-03", revealed=False))
        main_only = TrackClassification(tier=Tier.PARTICIPATION, total_achievements=10)
        storage.merge_upsert("player1", "2025-01", Track.MAIN, main_only)
        storage.merge_upsert("player1", "2025-01", Track.SHADOW, main_only)
        storage.merge_upsert("player1", "2025-02", Track.MAIN, main_only)
        storage.merge_upsert("player1", "2025-03", Track.MAIN, main_only)

        # Feb lacks its revealed shadow; Mar's shadow is unrevealed
        assert recomputer.find_missing_months("player1") == ["2025-02"]
