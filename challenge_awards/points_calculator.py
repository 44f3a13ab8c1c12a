"""
Convert award tiers into challenge points.
"""

from challenge_awards.exceptions import InvariantViolation
from challenge_awards.models import Tier, Track

# Participation is 1, each further tier adds 3
TIER_POINTS = {
    Tier.NONE: 0,
    Tier.PARTICIPATION: 1,
    Tier.BEATEN: 4,
    Tier.MASTERY: 7,
}

SHADOW_POINTS_CAP = TIER_POINTS[Tier.BEATEN]


def calculate_points(tier: Tier, track: Track = Track.MAIN) -> int:
    """
    Get the points a tier is worth on a track.

    Shadow tracks never classify above Beaten, so a shadow tier worth more
    than SHADOW_POINTS_CAP is rejected rather than clamped.

    Args:
        tier: Award tier
        track: MAIN or SHADOW

    Returns:
        Integer points

    Raises:
        InvariantViolation: If a shadow tier is worth more than the cap
    """
    points = TIER_POINTS[Tier(tier)]
    if Track(track) is Track.SHADOW and points > SHADOW_POINTS_CAP:
        raise InvariantViolation(f"Shadow track cannot award {Tier(tier).label}")
    return points


def total_points(results: list[tuple[Tier, Track]]) -> int:
    """Sum the points of several (tier, track) results."""
    return sum(calculate_points(tier, track) for tier, track in results)
