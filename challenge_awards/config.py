"""
Configuration management for challenge-awards.

Loads RetroAchievements credentials and engine settings from environment variables.
"""

import os
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

# Load .env file from project root
load_dotenv()


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got '{raw}'")


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{raw}'")


RA_USERNAME = os.getenv("RA_USERNAME")
RA_API_KEY = os.getenv("RA_API_KEY")
RA_API_BASE_URL = os.getenv("RA_API_BASE_URL", "https://retroachievements.org/API")

CHALLENGE_DB_PATH = os.getenv("CHALLENGE_DB_PATH")

# Rate limiting against the achievement service
API_CALL_DELAY = _get_float("API_CALL_DELAY", 1.2)
USER_DELAY = _get_float("USER_DELAY", 2.0)
MAX_RETRIES = _get_int("MAX_RETRIES", 3)
RETRY_BASE_DELAY = _get_float("RETRY_BASE_DELAY", 3.0)
REQUEST_TIMEOUT = _get_float("REQUEST_TIMEOUT", 30.0)

CHALLENGE_TIMEZONE = os.getenv("CHALLENGE_TIMEZONE", "UTC")

# 'skip': unrevealed shadow tracks score nothing
# 'compute_hidden': classify and store them, flag the result as hidden
SHADOW_UNREVEALED_POLICY = os.getenv("SHADOW_UNREVEALED_POLICY", "skip")
SHADOW_POLICIES = ("skip", "compute_hidden")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def get_timezone() -> ZoneInfo:
    """Timezone in which challenge months are evaluated."""
    try:
        return ZoneInfo(CHALLENGE_TIMEZONE)
    except ZoneInfoNotFoundError:
        raise ValueError(f"Unknown CHALLENGE_TIMEZONE: '{CHALLENGE_TIMEZONE}'")


def validate_config():
    """Validate that required configuration is present."""
    missing = []

    if not RA_USERNAME or RA_USERNAME == "your_username_here":
        missing.append("RA_USERNAME")

    if not RA_API_KEY or RA_API_KEY == "your_api_key_here":
        missing.append("RA_API_KEY")

    if missing:
        raise ValueError(
            f"Missing required configuration: {', '.join(missing)}\n"
            "Please copy .env.example to .env and fill in your values.\n"
            "Get a web API key at: https://retroachievements.org/settings"
        )

    if SHADOW_UNREVEALED_POLICY not in SHADOW_POLICIES:
        raise ValueError(
            f"SHADOW_UNREVEALED_POLICY must be one of {', '.join(SHADOW_POLICIES)}, "
            f"got '{SHADOW_UNREVEALED_POLICY}'"
        )

    get_timezone()
