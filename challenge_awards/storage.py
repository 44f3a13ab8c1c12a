"""
SQLite-based storage for challenge definitions and award progress.

Progress rows follow an upgrade-only discipline: a merge keeps the higher of
the stored and the candidate tier, so concurrent or repeated recomputations
can never lower a recorded award.
"""

import json
import logging
import os
import sqlite3
from pathlib import Path

from challenge_awards.exceptions import InvariantViolation
from challenge_awards.models import (
    Challenge,
    MergeResult,
    Tier,
    Track,
    TrackClassification,
    TrackDefinition,
    UserChallengeProgress,
)
from challenge_awards.points_calculator import calculate_points
from challenge_awards.window_resolver import parse_month_key

logger = logging.getLogger(__name__)


def _get_default_db_path() -> Path:
    """Get the default database path."""
    env_path = os.environ.get("CHALLENGE_DB_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return Path.home() / ".challenge-awards" / "progress.db"


class ProgressStorage:
    """SQLite-backed challenge catalog, user registry and progress store."""

    def __init__(self, db_path: str | Path | None = None):
        """
        Initialize the storage.

        Args:
            db_path: Path to the SQLite database file.
                     Defaults to ~/.challenge-awards/progress.db
        """
        if db_path is None:
            db_path = _get_default_db_path()
        self.db_path = Path(db_path).expanduser()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        """Open a connection in autocommit mode for explicit transactions."""
        return sqlite3.connect(self.db_path, timeout=30, isolation_level=None)

    def _init_db(self) -> None:
        """Create tables if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS challenges (
                    month_key TEXT PRIMARY KEY,
                    shadow_revealed INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS challenge_tracks (
                    month_key TEXT NOT NULL,
                    track TEXT NOT NULL,
                    game_id TEXT NOT NULL,
                    game_title TEXT,
                    total_achievements INTEGER NOT NULL,
                    progression_ids TEXT NOT NULL DEFAULT '[]',
                    win_ids TEXT NOT NULL DEFAULT '[]',
                    PRIMARY KEY (month_key, track)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY COLLATE NOCASE,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS challenge_progress (
                    user_id TEXT NOT NULL COLLATE NOCASE,
                    month_key TEXT NOT NULL,
                    track TEXT NOT NULL,
                    tier INTEGER NOT NULL DEFAULT 0,
                    points INTEGER NOT NULL DEFAULT 0,
                    achievements_in_window INTEGER NOT NULL DEFAULT 0,
                    total_achievements INTEGER NOT NULL DEFAULT 0,
                    percentage REAL NOT NULL DEFAULT 0,
                    game_title TEXT,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (user_id, month_key, track)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS processed_months (
                    user_id TEXT NOT NULL COLLATE NOCASE,
                    month_key TEXT NOT NULL,
                    processed_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (user_id, month_key)
                )
            """)
            conn.commit()

    # Challenge catalog

    def save_challenge(self, challenge: Challenge) -> None:
        """
        Create or replace a month's challenge definition.

        A track the challenge no longer defines is removed.

        Args:
            challenge: Challenge with its main and optional shadow track
        """
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO challenges (month_key, shadow_revealed)
                VALUES (?, ?)
                ON CONFLICT(month_key) DO UPDATE SET
                    shadow_revealed = excluded.shadow_revealed
                """,
                (challenge.month_key, int(challenge.shadow_revealed)),
            )
            for track in Track:
                definition = challenge.definition_for(track)
                if definition is None:
                    conn.execute(
                        "DELETE FROM challenge_tracks WHERE month_key = ? AND track = ?",
                        (challenge.month_key, track.value),
                    )
                    continue
                conn.execute(
                    """
                    INSERT INTO challenge_tracks (
                        month_key, track, game_id, game_title,
                        total_achievements, progression_ids, win_ids
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(month_key, track) DO UPDATE SET
                        game_id = excluded.game_id,
                        game_title = excluded.game_title,
                        total_achievements = excluded.total_achievements,
                        progression_ids = excluded.progression_ids,
                        win_ids = excluded.win_ids
                    """,
                    (
                        challenge.month_key,
                        track.value,
                        definition.game_id,
                        definition.game_title,
                        definition.total_achievement_count,
                        json.dumps(sorted(definition.progression_achievement_ids)),
                        json.dumps(sorted(definition.win_achievement_ids)),
                    ),
                )
            conn.commit()

    def get_challenge(self, month_key: str) -> Challenge | None:
        """
        Get the challenge for a month.

        Args:
            month_key: Month in YYYY-MM format

        Returns:
            The Challenge, or None if no challenge is configured for the month
        """
        parse_month_key(month_key)
        challenges = self._load_challenges("WHERE c.month_key = ?", (month_key,))
        return challenges[0] if challenges else None

    def list_challenges(
        self, from_key: str | None = None, to_key: str | None = None
    ) -> list[Challenge]:
        """
        List challenges oldest first, optionally within an inclusive month range.

        Args:
            from_key: First month to include (YYYY-MM)
            to_key: Last month to include (YYYY-MM)
        """
        clauses = []
        params: list[str] = []
        if from_key:
            parse_month_key(from_key)
            clauses.append("c.month_key >= ?")
            params.append(from_key)
        if to_key:
            parse_month_key(to_key)
            clauses.append("c.month_key <= ?")
            params.append(to_key)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return self._load_challenges(where, tuple(params))

    def _load_challenges(self, where: str, params: tuple) -> list[Challenge]:
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                f"""
                SELECT c.month_key, c.shadow_revealed, t.track, t.game_id,
                       t.game_title, t.total_achievements, t.progression_ids, t.win_ids
                FROM challenges c
                JOIN challenge_tracks t ON t.month_key = c.month_key
                {where}
                ORDER BY c.month_key
                """,
                params,
            ).fetchall()

        # Group track rows by month
        by_month: dict[str, dict] = {}
        for row in rows:
            entry = by_month.setdefault(
                row["month_key"], {"revealed": bool(row["shadow_revealed"])}
            )
            entry[row["track"]] = TrackDefinition(
                game_id=row["game_id"],
                game_title=row["game_title"],
                total_achievement_count=row["total_achievements"],
                progression_achievement_ids=frozenset(json.loads(row["progression_ids"])),
                win_achievement_ids=frozenset(json.loads(row["win_ids"])),
            )

        challenges = []
        for month_key, entry in by_month.items():
            if Track.MAIN.value not in entry:
                logger.warning(f"Challenge {month_key} has no main track; ignoring it")
                continue
            challenges.append(
                Challenge(
                    month_key=month_key,
                    main=entry[Track.MAIN.value],
                    shadow=entry.get(Track.SHADOW.value),
                    shadow_revealed=entry["revealed"],
                )
            )
        return challenges

    def reveal_shadow(self, month_key: str) -> bool:
        """
        Mark a month's shadow challenge as revealed.

        Returns:
            True if the challenge exists
        """
        parse_month_key(month_key)
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE challenges SET shadow_revealed = 1 WHERE month_key = ?",
                (month_key,),
            )
            conn.commit()
        return cursor.rowcount > 0

    # Users

    def register_user(self, user_id: str) -> bool:
        """
        Register a member for challenge tracking.

        Returns:
            True if the user was newly added
        """
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO users (user_id) VALUES (?)", (user_id,)
            )
            conn.commit()
        return cursor.rowcount > 0

    def get_user(self, user_id: str) -> str | None:
        """Look up a registered user case-insensitively; returns the stored name."""
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT user_id FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()
        return row[0] if row else None

    def list_users(self) -> list[str]:
        """All registered users in registration order."""
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT user_id FROM users ORDER BY created_at, rowid"
            ).fetchall()
        return [row[0] for row in rows]

    # Progress

    def merge_upsert(
        self,
        user_id: str,
        month_key: str,
        track: Track,
        classification: TrackClassification,
        game_title: str | None = None,
    ) -> MergeResult:
        """
        Merge a freshly computed tier into the stored progress for a key.

        Writes max(stored, candidate) inside a single IMMEDIATE transaction, so
        concurrent merges for the same key always end at the higher tier.
        Detail columns are only rewritten when the candidate is at least as good
        as what is stored.

        Args:
            user_id: Member name
            month_key: Challenge month (YYYY-MM)
            track: MAIN or SHADOW
            classification: Candidate result from the classifier
            game_title: Title to record with the result

        Returns:
            MergeResult with the stored tier, its points and the previous tier

        Raises:
            InvariantViolation: If the stored tier would end lower than before
        """
        parse_month_key(month_key)
        track = Track(track)
        candidate = Tier(classification.tier)
        key = (user_id, month_key, track.value)

        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """
                SELECT tier FROM challenge_progress
                WHERE user_id = ? AND month_key = ? AND track = ?
                """,
                key,
            ).fetchone()
            previous = Tier(row[0]) if row else Tier.NONE

            conn.execute(
                """
                INSERT INTO challenge_progress (
                    user_id, month_key, track, tier, points,
                    achievements_in_window, total_achievements, percentage,
                    game_title, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(user_id, month_key, track) DO UPDATE SET
                    tier = excluded.tier,
                    points = excluded.points,
                    achievements_in_window = excluded.achievements_in_window,
                    total_achievements = excluded.total_achievements,
                    percentage = excluded.percentage,
                    game_title = COALESCE(excluded.game_title, challenge_progress.game_title),
                    updated_at = excluded.updated_at
                WHERE excluded.tier >= challenge_progress.tier
                """,
                (
                    *key,
                    int(candidate),
                    calculate_points(candidate, track),
                    classification.earned_in_window,
                    classification.total_achievements,
                    classification.percentage,
                    game_title,
                ),
            )

            stored = Tier(
                conn.execute(
                    """
                    SELECT tier FROM challenge_progress
                    WHERE user_id = ? AND month_key = ? AND track = ?
                    """,
                    key,
                ).fetchone()[0]
            )
            if stored < max(previous, candidate):
                raise InvariantViolation(
                    f"Tier for {user_id} {month_key} {track.value} would drop "
                    f"from {previous.label} to {stored.label}",
                    user_id=user_id,
                    month_key=month_key,
                )

            conn.execute("COMMIT")
        except InvariantViolation as e:
            conn.execute("ROLLBACK")
            logger.error(f"Refused progress write: {e}")
            raise
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

        return MergeResult(
            tier=stored,
            points=calculate_points(stored, track),
            previous_tier=previous,
        )

    def get_progress(
        self, user_id: str, month_key: str, track: Track
    ) -> UserChallengeProgress | None:
        """Get the stored progress for one key, or None if never computed."""
        records = self._query_progress(
            "WHERE p.user_id = ? AND p.month_key = ? AND p.track = ?",
            (user_id, month_key, Track(track).value),
        )
        return records[0] if records else None

    def get_user_progress(
        self, user_id: str, include_hidden: bool = False
    ) -> list[UserChallengeProgress]:
        """
        All stored progress for a user, oldest month first, main before shadow.

        Shadow results for a challenge whose shadow is not revealed yet are
        left out unless include_hidden is set.
        """
        if include_hidden:
            return self._query_progress("WHERE p.user_id = ?", (user_id,))
        return self._query_progress(
            """
            WHERE p.user_id = ?
              AND NOT (p.track = ? AND COALESCE(c.shadow_revealed, 1) = 0)
            """,
            (user_id, Track.SHADOW.value),
        )

    def _query_progress(self, where: str, params: tuple) -> list[UserChallengeProgress]:
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                f"""
                SELECT p.user_id, p.month_key, p.track, p.tier, p.points,
                       p.achievements_in_window, p.total_achievements, p.percentage,
                       p.game_title, p.updated_at
                FROM challenge_progress p
                LEFT JOIN challenges c ON c.month_key = p.month_key
                {where}
                ORDER BY p.month_key, p.track
                """,
                params,
            ).fetchall()

        return [
            UserChallengeProgress(
                user_id=row["user_id"],
                month_key=row["month_key"],
                track=Track(row["track"]),
                tier=Tier(row["tier"]),
                points=row["points"],
                achievements_in_window=row["achievements_in_window"],
                total_achievements=row["total_achievements"],
                percentage=row["percentage"],
                game_title=row["game_title"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    # Batch bookkeeping

    def mark_processed(self, user_id: str, month_key: str) -> None:
        """Record that a (user, month) pair has been backfilled."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO processed_months (user_id, month_key, processed_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(user_id, month_key) DO UPDATE SET
                    processed_at = excluded.processed_at
                """,
                (user_id, month_key),
            )
            conn.commit()

    def is_processed(self, user_id: str, month_key: str) -> bool:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT 1 FROM processed_months WHERE user_id = ? AND month_key = ?",
                (user_id, month_key),
            ).fetchone()
        return row is not None

    def reset_processed(self, user_id: str) -> int:
        """
        Clear a user's processed markers so the next backfill redoes them.

        Returns:
            Number of markers removed
        """
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM processed_months WHERE user_id = ?", (user_id,)
            )
            conn.commit()
        return cursor.rowcount
