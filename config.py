import os

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


# ---- Discord ----
DISCORD_TOKEN = os.getenv("DISCORD_TOKEN", "").strip()
# For instant slash commands in a test server, set DISCORD_GUILD_ID (recommended).
DISCORD_GUILD_ID = _env_int("DISCORD_GUILD_ID", 0)
# Screenshots are only picked up in this channel.
RANK_CHANNEL_ID = _env_int("RANK_CHANNEL_ID", 0)

# ---- Rank table ----
RANKS_FILE = os.getenv("RANKS_FILE", "ranks.json").strip()

# ---- Ephemeral DMs ----
DM_DELETE_AFTER_SECONDS = _env_int("DM_DELETE_AFTER_SECONDS", 30 * 60)

# ---- OCR ----
# OCR concurrency limiter (important under load)
OCR_CONCURRENCY = _env_int("OCR_CONCURRENCY", 4)
OCR_GPU = bool(_env_int("OCR_GPU", 0))

# ---- Logging ----
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()
LOG_FILE = os.getenv("LOG_FILE", "logs/bot.log").strip()

# Optional image shown in the channel instructions embed
EXAMPLE_IMAGE_URL = os.getenv("EXAMPLE_IMAGE_URL", "").strip()


def missing_required() -> list[str]:
    missing = []
    if not DISCORD_TOKEN:
        missing.append("DISCORD_TOKEN")
    if not RANK_CHANNEL_ID:
        missing.append("RANK_CHANNEL_ID")
    return missing
