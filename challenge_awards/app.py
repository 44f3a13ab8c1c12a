"""
FastAPI web application for challenge-awards.

Provides REST API endpoints for challenge configuration and award recomputation.
"""

import logging

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from challenge_awards.config import validate_config
from challenge_awards.exceptions import (
    ChallengeAwardsError,
    DataSourceError,
    InputError,
    InvariantViolation,
)
from challenge_awards.main import build_recomputer
from challenge_awards.models import Challenge, TrackDefinition
from challenge_awards.storage import ProgressStorage
from challenge_awards.window_resolver import parse_month_key

logger = logging.getLogger(__name__)

app = FastAPI(
    title="challenge-awards",
    description="Monthly challenge award engine",
    version="0.1.0",
)


class TrackDefinitionIn(BaseModel):
    """Request model for one challenge track."""

    game_id: str = Field(..., min_length=1, description="RetroAchievements game id")
    game_title: str | None = Field(None, max_length=200)
    total_achievements: int = Field(..., ge=0, description="Achievements in the game")
    progression: list[str] = Field(default_factory=list, description="All required for Beaten")
    win: list[str] = Field(default_factory=list, description="At least one required for Beaten")

    def to_definition(self) -> TrackDefinition:
        return TrackDefinition(
            game_id=self.game_id,
            game_title=self.game_title,
            total_achievement_count=self.total_achievements,
            progression_achievement_ids=frozenset(self.progression),
            win_achievement_ids=frozenset(self.win),
        )


class ChallengeIn(BaseModel):
    """Request model for creating or updating a month's challenge."""

    main: TrackDefinitionIn
    shadow: TrackDefinitionIn | None = None
    shadow_revealed: bool = False


def _definition_to_dict(definition: TrackDefinition | None) -> dict | None:
    if definition is None:
        return None
    return {
        "game_id": definition.game_id,
        "game_title": definition.game_title,
        "total_achievements": definition.total_achievement_count,
        "progression": sorted(definition.progression_achievement_ids),
        "win": sorted(definition.win_achievement_ids),
    }


def _challenge_to_dict(challenge: Challenge, include_hidden: bool = False) -> dict:
    show_shadow = challenge.shadow_revealed or include_hidden
    return {
        "month_key": challenge.month_key,
        "main": _definition_to_dict(challenge.main),
        "shadow": _definition_to_dict(challenge.shadow) if show_shadow else None,
        "shadow_revealed": challenge.shadow_revealed,
    }


def _check_month_key(month_key: str) -> None:
    try:
        parse_month_key(month_key)
    except InputError as e:
        raise HTTPException(status_code=400, detail=e.message)


def _require_user(storage: ProgressStorage, user_id: str) -> str:
    stored = storage.get_user(user_id)
    if stored is None:
        raise HTTPException(status_code=404, detail=f"User '{user_id}' is not registered")
    return stored


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/api/challenges/{month_key}")
def get_challenge(month_key: str):
    """
    Get a month's challenge definition.

    The shadow track is only included once it has been revealed.
    """
    _check_month_key(month_key)
    challenge = ProgressStorage().get_challenge(month_key)
    if challenge is None:
        raise HTTPException(status_code=404, detail=f"No challenge for {month_key}")
    return _challenge_to_dict(challenge)


@app.put("/api/challenges/{month_key}")
def put_challenge(month_key: str, body: ChallengeIn):
    """
    Create or update a month's challenge definition.

    Args:
        month_key: Month in YYYY-MM format
        body: ChallengeIn with the main and optional shadow track
    """
    _check_month_key(month_key)
    try:
        challenge = Challenge(
            month_key=month_key,
            main=body.main.to_definition(),
            shadow=body.shadow.to_definition() if body.shadow else None,
            shadow_revealed=body.shadow_revealed,
        )
    except InputError as e:
        raise HTTPException(status_code=400, detail=e.message)

    ProgressStorage().save_challenge(challenge)
    return _challenge_to_dict(challenge, include_hidden=True)


@app.post("/api/challenges/{month_key}/reveal")
def reveal_shadow(month_key: str):
    """Reveal a month's shadow challenge."""
    _check_month_key(month_key)
    storage = ProgressStorage()
    if not storage.reveal_shadow(month_key):
        raise HTTPException(status_code=404, detail=f"No challenge for {month_key}")
    return _challenge_to_dict(storage.get_challenge(month_key))


@app.post("/api/users/{user_id}")
def register_user(user_id: str):
    """Register a member for challenge tracking."""
    added = ProgressStorage().register_user(user_id)
    return {"user_id": user_id, "created": added}


@app.post("/api/users/{user_id}/recompute")
def recompute_user(user_id: str, month: str | None = None):
    """
    Recompute a member's awards for the current month.

    Returns:
        JSON with the stored tier and points per track
    """
    try:
        validate_config()
    except ValueError as e:
        raise HTTPException(status_code=500, detail=f"Configuration error: {e}")

    storage = ProgressStorage()
    _require_user(storage, user_id)
    if month is not None:
        _check_month_key(month)

    recomputer = build_recomputer(storage)
    try:
        result = recomputer.recompute_live(user_id, month)
    except InputError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except DataSourceError:
        # Details are logged by the recomputer
        raise HTTPException(
            status_code=502,
            detail="Could not fetch achievement data. Please try again later.",
        )
    except InvariantViolation:
        raise HTTPException(status_code=500, detail="Progress update was refused.")
    except ChallengeAwardsError as e:
        raise HTTPException(status_code=500, detail=e.message)

    return result.to_dict()


@app.get("/api/users/{user_id}/progress")
def get_user_progress(user_id: str):
    """
    Get every recorded challenge result for a member.

    Returns:
        JSON with the records and the total points
    """
    storage = ProgressStorage()
    user_id = _require_user(storage, user_id)
    records = storage.get_user_progress(user_id)
    return {
        "user_id": user_id,
        "records": [r.to_dict() for r in records],
        "total_points": sum(r.points for r in records),
    }


@app.get("/api/users/{user_id}/missing")
def get_missing_months(user_id: str):
    """List months with no recorded result for a member."""
    storage = ProgressStorage()
    user_id = _require_user(storage, user_id)
    recomputer = build_recomputer(storage)
    return {"user_id": user_id, "missing": recomputer.find_missing_months(user_id)}


@app.post("/api/users/{user_id}/reset")
def reset_user(user_id: str):
    """Clear a member's processed flag so the next backfill redoes them."""
    storage = ProgressStorage()
    user_id = _require_user(storage, user_id)
    cleared = storage.reset_processed(user_id)
    return {"user_id": user_id, "cleared": cleared}
