# backend/relay/core/config.py
import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# --- Database ---
POSTGRES_USER = os.getenv("POSTGRES_USER", "relay")
POSTGRES_PASSWORD = os.getenv("POSTGRES_PASSWORD", "relay")
POSTGRES_HOST = os.getenv("POSTGRES_HOST", "db")
POSTGRES_PORT = os.getenv("POSTGRES_PORT", "5432")
POSTGRES_DB = os.getenv("POSTGRES_DB", "relay")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+asyncpg://{POSTGRES_USER}:{POSTGRES_PASSWORD}@{POSTGRES_HOST}:{POSTGRES_PORT}/{POSTGRES_DB}",
)
DATABASE_ECHO = _env_bool("DATABASE_ECHO", False)

# --- Redis (membership read cache) ---
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
MEMBERSHIP_CACHE_ENABLED = _env_bool("MEMBERSHIP_CACHE_ENABLED", True)
MEMBERSHIP_CACHE_TTL = int(os.getenv("MEMBERSHIP_CACHE_TTL", 300))

# --- Auth ---
SECRET_KEY = os.getenv("SECRET_KEY", "your-secret-key-very-secret")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))

# --- HTTP ---
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",")]

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# --- Delivery ---
STORE_RETRY_ATTEMPTS = int(os.getenv("STORE_RETRY_ATTEMPTS", 3))
STORE_RETRY_BASE_DELAY = float(os.getenv("STORE_RETRY_BASE_DELAY", 0.05))
PUSH_TIMEOUT_SECONDS = float(os.getenv("PUSH_TIMEOUT_SECONDS", 5))
STATUS_CACHE_SIZE = int(os.getenv("STATUS_CACHE_SIZE", 10000))

# --- Messages ---
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
MESSAGE_PREVIEW_LENGTH = 120

# --- Notifications ---
NOTIFICATION_RETENTION_DAYS = int(os.getenv("NOTIFICATION_RETENTION_DAYS", 30))
NOTIFICATION_SWEEP_INTERVAL_SECONDS = float(os.getenv("NOTIFICATION_SWEEP_INTERVAL_SECONDS", 3600))
NOTIFICATION_PAGE_SIZE = 20
