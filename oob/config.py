import os
import secrets
import logging

logger = logging.getLogger("oob.config")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


APP_TITLE = "Out-of-Band Operations"
APP_VERSION = "0.3.0"

DB_PATH = os.getenv("DB_PATH", "/data/oob.db")
FILES_DIR = os.getenv("FILES_DIR", "/data/oob-files")
API_HOST = os.getenv("API_HOST", "http://localhost:3000").rstrip("/")

MAX_OPERATION_TRIES = int(os.getenv("MAX_OPERATION_TRIES", "3"))
MAX_PENDING_OPERATIONS_PER_ASSET = int(os.getenv("MAX_PENDING_OPERATIONS_PER_ASSET", "10"))

TOKEN_CACHE_MAX = int(os.getenv("TOKEN_CACHE_MAX", "1000"))
TOKEN_CACHE_TTL_SECONDS = float(os.getenv("TOKEN_CACHE_TTL_SECONDS", str(15 * 60)))

SECRET_HASH_ROUNDS = int(os.getenv("SECRET_HASH_ROUNDS", "12"))
UPLOAD_TOKEN_BYTES = int(os.getenv("UPLOAD_TOKEN_BYTES", "16"))

OPERATION_TIMEOUT_MAX_AGE_DAYS = int(os.getenv("OPERATION_TIMEOUT_MAX_AGE_DAYS", str(4 * 7)))
OPERATION_DELETE_MAX_AGE_DAYS = int(os.getenv("OPERATION_DELETE_MAX_AGE_DAYS", str(3 * 4 * 7)))
OPERATION_PAGE_SIZE = int(os.getenv("OPERATION_PAGE_SIZE", "100"))

# Cron
CRON_ENABLED = _env_bool("CRON_ENABLED", True)
CRON_POLL_SECONDS = float(os.getenv("CRON_POLL_SECONDS", "60"))
CRON_OPERATION_CLEANUP_NAME = "operation_cleanup"
CRON_OPERATION_CLEANUP_INTERVAL = int(os.getenv("CRON_OPERATION_CLEANUP_INTERVAL", str(7 * 24 * 3600)))
CRON_OPERATION_CLEANUP_TIMEOUT = int(os.getenv("CRON_OPERATION_CLEANUP_TIMEOUT", str(2 * 60)))

# Signed download links
FILE_LINK_SECRET = os.getenv("FILE_LINK_SECRET", "")
if not FILE_LINK_SECRET:
    FILE_LINK_SECRET = secrets.token_hex(32)
    logger.warning("FILE_LINK_SECRET not set, download links will not survive a restart")
FILE_LINK_TTL_SECONDS = int(os.getenv("FILE_LINK_TTL_SECONDS", "3600"))

# Events
SERVICE_EVENT_ID = "oob"
EVENTS_WEBHOOK_URL = os.getenv("EVENTS_WEBHOOK_URL", "")
EVENTS_WEBHOOK_TIMEOUT = float(os.getenv("EVENTS_WEBHOOK_TIMEOUT", "5.0"))

# Management API keys: "key=role,key2=role"
OOB_API_KEYS = os.getenv("OOB_API_KEYS", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "/data/oob.log")
TEST_MODE = _env_bool("TEST_MODE", False)
