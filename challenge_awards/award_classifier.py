"""
Classify a member's progress on a challenge track into an award tier.

Tier rules, strongest first:

- Mastery: every achievement of the game earned (all-time) and at least one
  of them earned inside the challenge window.
- Beaten: every progression achievement earned, at least one win achievement
  earned (when the track defines any), and at least one progression or win
  achievement earned inside the window.
- Participation: anything earned inside the window.

Shadow tracks top out at Beaten.
"""

from challenge_awards.models import (
    AchievementUnlockSet,
    TrackClassification,
    TrackDefinition,
    Tier,
    Track,
)
from challenge_awards.window_resolver import ChallengeWindow

MAX_TIER = {
    Track.MAIN: Tier.MASTERY,
    Track.SHADOW: Tier.BEATEN,
}


def cap_tier(tier: Tier, track: Track) -> Tier:
    """Clamp a tier to the highest one the track can award."""
    return min(tier, MAX_TIER[track])


def classify_track(
    unlocks: AchievementUnlockSet,
    definition: TrackDefinition,
    window: ChallengeWindow,
    track: Track,
) -> TrackClassification:
    """
    Determine the award tier for one track.

    Args:
        unlocks: The user's all-time unlock state for the track's game
        definition: Progression/win criteria and total count for the track
        window: Earn window of the challenge month
        track: MAIN or SHADOW

    Returns:
        TrackClassification with the tier and the counts it was derived from
    """
    total = definition.total_achievement_count

    earned_all_time = {aid for aid, ts in unlocks.earned.items() if ts is not None}
    earned_in_window = {
        aid for aid in earned_all_time if window.earned_in_window(unlocks.earned[aid])
    }

    if not earned_in_window or total <= 0:
        return TrackClassification(
            tier=Tier.NONE,
            earned_in_window=len(earned_in_window),
            earned_all_time=len(earned_all_time),
            total_achievements=total,
        )

    if len(earned_all_time) == total:
        tier = Tier.MASTERY
    elif _is_beaten(definition, earned_all_time, earned_in_window):
        tier = Tier.BEATEN
    else:
        tier = Tier.PARTICIPATION

    return TrackClassification(
        tier=cap_tier(tier, track),
        earned_in_window=len(earned_in_window),
        earned_all_time=len(earned_all_time),
        total_achievements=total,
    )


def _is_beaten(
    definition: TrackDefinition,
    earned_all_time: set[str],
    earned_in_window: set[str],
) -> bool:
    progression_met = definition.progression_achievement_ids <= earned_all_time
    win_met = not definition.win_achievement_ids or bool(
        definition.win_achievement_ids & earned_all_time
    )
    # A completion that happened entirely before this window is not credited again
    qualifying_in_window = bool(definition.qualifying_achievement_ids & earned_in_window)

    return progression_met and win_met and qualifying_in_window
