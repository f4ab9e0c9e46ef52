import os
from pathlib import Path

# Configuration via environment variables with sensible defaults
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# SQLite configuration (primary store)
DB_PATH = os.getenv("DB_PATH", str(Path(__file__).parent / "data" / "breeder.db"))
DB_TIMEOUT = int(os.getenv("DB_TIMEOUT", "60"))  # Busy/connection timeout in seconds

# PostgreSQL configuration
DATABASE_URL = os.getenv("DATABASE_URL", "")
DB_POOL_MIN_SIZE = int(os.getenv("DB_POOL_MIN_SIZE", "5"))
DB_POOL_MAX_SIZE = int(os.getenv("DB_POOL_MAX_SIZE", "20"))

# Database type selection
USE_POSTGRES = bool(os.getenv("USE_POSTGRES", "false").lower() in ("true", "1", "yes"))

# Authentication and security
VALID_KEYS = [k.strip() for k in os.getenv("VALID_KEYS", "").split(",") if k.strip()]
ADMIN_SECRET = os.getenv("ADMIN_SECRET", "")

# Firebase: service account JSON (production) or a key file path (local)
FIREBASE_CREDENTIALS = os.getenv("FIREBASE_CREDENTIALS", "")
GOOGLE_APPLICATION_CREDENTIALS = os.getenv("GOOGLE_APPLICATION_CREDENTIALS", "")
FIREBASE_CHECK_REVOKED = os.getenv("FIREBASE_CHECK_REVOKED", "false").lower() in ("true", "1", "yes")

# Public identifiers
ANIMAL_ID_PREFIX = os.getenv("ANIMAL_ID_PREFIX", "CTC")
ACCOUNT_ID_PREFIX = os.getenv("ACCOUNT_ID_PREFIX", "CTU")
PUBLIC_ID_START = int(os.getenv("PUBLIC_ID_START", "1000"))

NOTIFICATIONS_PAGE_SIZE = int(os.getenv("NOTIFICATIONS_PAGE_SIZE", "50"))
