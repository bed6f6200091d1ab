"""
Shared configuration for SmolBot.

Centralizes paths, tokens, queue limits, model ladders and pacing
constants so every module resolves the same values without hardcoded
literals scattered around the bot.

On Railway:
    Set DATA_DIR env var to point at the persistent volume mount.
    e.g. DATA_DIR=/data  (Railway volume mounted at /data)

Locally:
    Defaults to data/ relative to the repository root.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.environ.get(name, "")
    values = [part.strip() for part in raw.split(",") if part.strip()]
    return values or default


# ---------------------------------------------------------------------------
# Directory layout
# ---------------------------------------------------------------------------

# Root of the repository (parent of common/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Persistent data directory - override via env var for Railway volumes
DATA_DIR = Path(os.environ.get("DATA_DIR", str(PROJECT_ROOT / "data")))

# Emote usage counts, survives restarts
EMOJI_RANKINGS_PATH = DATA_DIR / "emoji-rankings.json"

# Persona prompt text (falls back to the built-in prompt when missing)
PERSONA_PROMPT_PATH = Path(
    os.environ.get("PERSONA_PROMPT_PATH", str(PROJECT_ROOT / "bots" / "smolbot" / "system_prompt.txt"))
)

LOG_FILE = os.environ.get("LOG_FILE", "smolbot.log")

# ---------------------------------------------------------------------------
# Secrets (validated at bot startup, not at import)
# ---------------------------------------------------------------------------

DISCORD_TOKEN = os.environ.get("DISCORD_TOKEN", "")
ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY", "")

REQUIRED_ENV_VARS = ("DISCORD_TOKEN", "ANTHROPIC_API_KEY")


def require_env() -> None:
    """Raise if a required secret is missing from the environment."""
    missing = [name for name in REQUIRED_ENV_VARS if not os.environ.get(name)]
    if missing:
        raise RuntimeError(f"Missing required environment variable(s): {', '.join(missing)}")


# ---------------------------------------------------------------------------
# Health check server
# ---------------------------------------------------------------------------

PORT = int(os.environ.get("PORT", "8000"))

# ---------------------------------------------------------------------------
# Message history
# ---------------------------------------------------------------------------

MAX_MESSAGES = 15          # Messages kept per channel
MAX_MESSAGE_LENGTH = 500   # Characters per message before truncation
MAX_IMAGE_BYTES = 20 * 1024 * 1024
IMAGE_CONTENT_TYPES = {"image/png", "image/jpeg", "image/jpg", "image/webp", "image/gif"}

# ---------------------------------------------------------------------------
# Queue / admission control
# ---------------------------------------------------------------------------

MAX_QUEUE_SIZE = 5
PROCESSING_DELAY = 2.5     # Seconds between items of the same channel

# ---------------------------------------------------------------------------
# Retry / model fallback
# ---------------------------------------------------------------------------

MAX_RETRIES = 3
INITIAL_RETRY_DELAY = 2.5
RATE_LIMIT_BUFFER = 5.0    # Added on top of a suggested wait
# When the ladder resets to the top tier after a parsed wait, go through the
# backoff wait before retrying instead of hitting the limit again at once
RESET_COOLDOWN = os.environ.get("RESET_COOLDOWN", "true").lower() != "false"

# Most capable first
TEXT_MODELS = _env_list("TEXT_MODELS", [
    "claude-sonnet-4-20250514",
    "claude-3-5-haiku-20241022",
    "claude-3-haiku-20240307",
])

VISION_MODELS = _env_list("VISION_MODELS", [
    "claude-sonnet-4-20250514",
    "claude-3-7-sonnet-20250219",
    "claude-3-haiku-20240307",
])

# ---------------------------------------------------------------------------
# Generation settings
# ---------------------------------------------------------------------------

TEMPERATURE = 0.7
MAX_TOKENS = 512
VISION_BRIEF_MAX_TOKENS = 150
VISION_DETAILED_MAX_TOKENS = 1024

# ---------------------------------------------------------------------------
# Human pacing
# ---------------------------------------------------------------------------

THINKING_DELAY_RANGE = (1.0, 3.0)   # Before the typing indicator shows up
TYPING_LEAD_RANGE = (0.5, 1.5)      # Typing shown while the reply is generated
TYPING_CHARS_PER_SECOND = 7         # ~50 WPM casual typing
TYPING_MIN_DELAY = 0.8
TYPING_MAX_DELAY = 7.0

# ---------------------------------------------------------------------------
# Emote popularity
# ---------------------------------------------------------------------------

MAX_DISPLAYED_EMOJIS = 15
EMOJI_SAVE_INTERVAL = 10 * 60        # Periodic flush of rankings
EMOJI_UPDATE_INTERVAL = 60 * 60      # Periodic hot set rebuild
EMOJI_REFRESH_MINUTES = 5            # Re-fetch guild emotes
