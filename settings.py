"""
Configuration for Kohina.

Values are read from the environment (optionally via a .env file). The two
backend values, DATABASE_URL and SECRET_KEY, are expected at deploy time;
when either is missing a warning is logged and a local default is used so
the app still starts.
"""
import logging
import os
import secrets
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent

DATABASE_URL = os.getenv("DATABASE_URL", "")
SECRET_KEY = os.getenv("SECRET_KEY", "")

STORAGE_DIR = Path(os.getenv("STORAGE_DIR", "storage"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Feed and media
FEED_PAGE_SIZE = int(os.getenv("FEED_PAGE_SIZE", "50"))
SIGNED_URL_TTL = int(os.getenv("SIGNED_URL_TTL", "300"))  # seconds

# Sessions
SESSION_COOKIE = "session"
SESSION_MAX_AGE = int(os.getenv("SESSION_MAX_AGE", str(3600 * 24)))

# Upload constraints
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "10"))
ALLOWED_AUDIO_TYPES = {"audio/mpeg", "audio/wav", "audio/x-wav", "audio/ogg"}
ALLOWED_EXTENSIONS = {".mp3", ".wav", ".ogg"}

# Storage buckets
AUDIO_BUCKET = "audio"
AVATAR_BUCKET = "avatars"
PUBLIC_BUCKETS = {AVATAR_BUCKET}

# Routes
ENTRY_ROUTE = "/"
HOME_ROUTE = "/home"
PROFILE_ROUTE = "/profile"
UPLOAD_ROUTE = "/upload"


def configure_logging(level: str | None = None) -> None:
    """Apply the configured log level to the root logger."""
    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def resolve_backend_config() -> tuple[str, str]:
    """
    Return the (database_url, secret_key) pair, warning about missing values.

    Returns:
        tuple[str, str]: Usable database URL and signing key
    """
    database_url = DATABASE_URL
    secret_key = SECRET_KEY

    if not database_url:
        logger.warning("Missing DATABASE_URL in environment, using local sqlite database")
        database_url = "sqlite:///./kohina.db"
    if not secret_key:
        logger.warning("Missing SECRET_KEY in environment, sessions will not survive a restart")
        secret_key = secrets.token_hex(32)

    return database_url, secret_key
