"""
CLI display functions for challenge-awards.
"""

from challenge_awards.models import LiveResult, Tier, UserChallengeProgress
from challenge_awards.points_calculator import total_points

TIER_EMOJI = {
    Tier.MASTERY: "✨",
    Tier.BEATEN: "⭐",
    Tier.PARTICIPATION: "🏁",
    Tier.NONE: "  ",
}


def format_points(points: int) -> str:
    """Format a point count with the right plural."""
    return f"{points} point" if points == 1 else f"{points} points"


def display_live_result(result: LiveResult) -> None:
    """
    Display a live recompute result to the console.

    Args:
        result: LiveResult from ChallengeRecomputer.recompute_live()
    """
    print(f"🎮 {result.user_id} - challenge {result.month_key}")

    for track, track_result in result.tracks.items():
        label = "Main  " if track.value == "main" else "Shadow"
        if track_result.hidden:
            print(f"   {label}  (hidden until revealed)")
            continue

        title = track_result.game_title or track_result.game_id or "No challenge"
        line = (
            f"   {label}  {TIER_EMOJI[track_result.tier]} {track_result.tier.label:<13} "
            f"{format_points(track_result.points):<10} {title}"
        )
        if track_result.classification is not None:
            c = track_result.classification
            line += f" ({c.earned_in_window}/{c.total_achievements} this month)"
        if track_result.upgraded:
            line += " - upgraded!"
        print(line)

    print(f"   Total: {format_points(result.total_points)}")
    print()


def display_user_progress(user_id: str, records: list[UserChallengeProgress]) -> None:
    """
    Display every stored challenge result for a user.

    Args:
        user_id: Member name
        records: Stored progress, oldest month first
    """
    if not records:
        print(f"No challenge results recorded for {user_id}.")
        return

    print(f"📅 Challenge history for {user_id}:")
    print("  MONTH    TRACK   TIER           POINTS  GAME")
    print("  " + "-" * 60)
    for record in records:
        print(
            f"  {record.month_key}  {record.track.value:<7} "
            f"{TIER_EMOJI[record.tier]} {record.tier.label:<13} {record.points:>3}     "
            f"{record.game_title or ''}"
        )

    total = total_points([(r.tier, r.track) for r in records])
    print(f"\n  Total: {format_points(total)}")
    print()


def format_batch_progress(progress) -> str:
    """
    Format a backfill progress snapshot as a single status line.

    Args:
        progress: BatchProgress snapshot
    """
    return (
        f"Processing: {progress.completed_count}/{progress.total_count} pairs "
        f"({progress.updated_count} updated, {progress.errored_count} errored, "
        f"{progress.skipped_count} skipped)"
    )


def display_batch_summary(progress) -> None:
    """Display the final summary of a backfill run."""
    status = "Stopped" if progress.stopped else "Complete"
    print(
        f"{status}! Processed {progress.processed_count} pairs, "
        f"updated {progress.updated_count}, "
        f"{progress.errored_count} errors, {progress.skipped_count} already done."
    )
    for user_id, month_key, error in progress.failures:
        print(f"   ❌ {user_id} {month_key}: {error}")
    print()
