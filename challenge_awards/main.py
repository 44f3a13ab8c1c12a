"""
challenge-awards: monthly challenge award engine

Entry point for the operator command line.
"""

import argparse
import logging
import signal
import sys
import threading

from challenge_awards import config
from challenge_awards.cli import (
    display_batch_summary,
    display_live_result,
    display_user_progress,
    format_batch_progress,
)
from challenge_awards.exceptions import ChallengeAwardsError, DataSourceError
from challenge_awards.recompute import ChallengeRecomputer
from challenge_awards.retro_client import RetroAchievementsClient
from challenge_awards.storage import ProgressStorage

logger = logging.getLogger(__name__)


def build_recomputer(storage: ProgressStorage | None = None) -> ChallengeRecomputer:
    """Create a recomputer wired to the configured API client and database."""
    client = RetroAchievementsClient(
        config.RA_USERNAME,
        config.RA_API_KEY,
        base_url=config.RA_API_BASE_URL,
        min_interval=config.API_CALL_DELAY,
        timeout=config.REQUEST_TIMEOUT,
        max_retries=config.MAX_RETRIES,
        retry_base_delay=config.RETRY_BASE_DELAY,
    )
    return ChallengeRecomputer(
        storage or ProgressStorage(config.CHALLENGE_DB_PATH),
        client,
        tz=config.get_timezone(),
        shadow_policy=config.SHADOW_UNREVEALED_POLICY,
        user_delay=config.USER_DELAY,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="challenge-awards",
        description="Compute monthly challenge awards from RetroAchievements data",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    live = sub.add_parser("live", help="Recompute the current month for one user")
    live.add_argument("user")
    live.add_argument("--month", help="Month to recompute (YYYY-MM)")

    backfill = sub.add_parser("backfill", help="Recompute past months")
    backfill.add_argument("--user", action="append", dest="users", help="Limit to a user (repeatable)")
    backfill.add_argument("--from", dest="from_key", help="First month (YYYY-MM)")
    backfill.add_argument("--to", dest="to_key", help="Last month (YYYY-MM)")
    backfill.add_argument("--force", action="store_true", help="Reprocess months already done")
    backfill.add_argument("--dry-run", action="store_true", help="Report without saving")

    reset = sub.add_parser("reset", help="Clear a user's processed flag")
    reset.add_argument("user")

    missing = sub.add_parser("missing", help="List months with no recorded result")
    missing.add_argument("user")

    progress = sub.add_parser("progress", help="Show a user's recorded results")
    progress.add_argument("user")

    register = sub.add_parser("register", help="Register a user for tracking")
    register.add_argument("user")

    return parser


def _run_backfill(recomputer: ChallengeRecomputer, args) -> int:
    stop_requested = threading.Event()

    def _request_stop(signum, frame):
        print("\nStopping after the current user/month...")
        stop_requested.set()

    previous_handler = signal.signal(signal.SIGINT, _request_stop)
    try:
        result = recomputer.run_backfill(
            user_ids=args.users,
            from_key=args.from_key,
            to_key=args.to_key,
            force=args.force,
            dry_run=args.dry_run,
            on_progress=lambda p: print(format_batch_progress(p)),
            should_stop=stop_requested.is_set,
        )
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    display_batch_summary(result)
    return 0 if result.errored_count == 0 else 2


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    )
    args = build_parser().parse_args(argv)

    try:
        config.validate_config()
    except ValueError as e:
        print(f"\nConfiguration Error:\n{e}")
        return 1

    recomputer = build_recomputer()

    try:
        if args.command == "live":
            display_live_result(recomputer.recompute_live(args.user, args.month))
        elif args.command == "backfill":
            return _run_backfill(recomputer, args)
        elif args.command == "reset":
            cleared = recomputer.reset_user(args.user)
            print(f"Reset the processed flag for {args.user} ({cleared} months cleared).")
        elif args.command == "missing":
            months = recomputer.find_missing_months(args.user)
            if months:
                print(f"Missing months for {args.user}: {', '.join(months)}")
            else:
                print(f"{args.user} has results for every challenge.")
        elif args.command == "progress":
            storage = recomputer.storage
            user_id = storage.get_user(args.user) or args.user
            display_user_progress(user_id, storage.get_user_progress(user_id))
        elif args.command == "register":
            added = recomputer.storage.register_user(args.user)
            print(f"{'Registered' if added else 'Already registered'}: {args.user}")
    except DataSourceError as e:
        print(f"\nError: could not fetch achievement data. {e}")
        return 1
    except ChallengeAwardsError as e:
        print(f"\nError: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
