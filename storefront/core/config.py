# storefront/core/config.py
import os
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

# ================== ENV ==================

ROOT_DIR = Path(__file__).resolve().parents[2]
load_dotenv(ROOT_DIR / "storefront/.env", override=False)

def env(*names: str, default: Optional[str] = None) -> str:
    for n in names:
        v = os.environ.get(n)
        if v is not None and str(v).strip() != "":
            return v
    if default is not None:
        return default
    raise KeyError(f"Missing required env var. Tried: {', '.join(names)}")

def env_int(*names: str, default: int) -> int:
    return int(env(*names, default=str(default)))

def env_flag(*names: str, default: bool) -> bool:
    return env(*names, default="true" if default else "false").strip().lower() in {"1", "true", "yes", "on"}

# ================== JWT ==================

JWT_SECRET = os.environ.get("JWT_SECRET", "default_secret_key")
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = int(os.environ.get("JWT_EXPIRATION_HOURS", "24"))

# ================== FULFILLMENT ==================
# Image generation / edit run behind n8n-style webhooks; watermark removal
# goes to a task API that is created and then polled.

GENERATION_WEBHOOK_URL = env("GENERATION_WEBHOOK_URL", "N8N_WEBHOOK_URL", default="http://localhost:5678/webhook/generate")
EDIT_WEBHOOK_URL = env("EDIT_WEBHOOK_URL", "N8N_EDIT_WEBHOOK_URL", default="http://localhost:5678/webhook/edit")
WATERMARK_API_URL = env("WATERMARK_API_URL", default="https://techsz.aoscdn.com/api/tasks/visual/external/watermark-remove")
WATERMARK_API_KEY = os.environ.get("WATERMARK_API_KEY", "")

FULFILLMENT_TIMEOUT_SECONDS = env_int("FULFILLMENT_TIMEOUT_SECONDS", default=300)
FULFILLMENT_HTTP_TIMEOUT_SECONDS = env_int("FULFILLMENT_HTTP_TIMEOUT_SECONDS", default=15)

# Jobs still PENDING this long after creation are failed + refunded by the reaper.
JOB_STALE_GRACE_SECONDS = env_int("JOB_STALE_GRACE_SECONDS", default=120)
JOB_REAPER_TICK_SECONDS = env_int("JOB_REAPER_TICK_SECONDS", default=60)

# ================== WATERMARK QUEUE ==================

WATERMARK_WORKER_ENABLED = env_flag("WATERMARK_WORKER_ENABLED", default=True)
WATERMARK_WORKER_CONCURRENCY = env_int("WATERMARK_WORKER_CONCURRENCY", default=5)
WATERMARK_TICK_SECONDS = env_int("WATERMARK_TICK_SECONDS", default=5)
WATERMARK_TASK_TIMEOUT_SECONDS = env_int("WATERMARK_TASK_TIMEOUT_SECONDS", default=180)
WATERMARK_MAX_ATTEMPTS = env_int("WATERMARK_MAX_ATTEMPTS", default=3)
WATERMARK_POLL_MAX_ATTEMPTS = env_int("WATERMARK_POLL_MAX_ATTEMPTS", default=15)
WATERMARK_POLL_BASE_INTERVAL = float(env("WATERMARK_POLL_BASE_INTERVAL", default="2.0"))
WATERMARK_POLL_MAX_INTERVAL = float(env("WATERMARK_POLL_MAX_INTERVAL", default="16.0"))
WATERMARK_MAX_BATCH = env_int("WATERMARK_MAX_BATCH", default=50)
WATERMARK_REFUND_ON_FAILURE = env_flag("WATERMARK_REFUND_ON_FAILURE", default=True)

# ================== CREDITS ==================

PRICING_CACHE_TTL_SECONDS = env_int("PRICING_CACHE_TTL_SECONDS", default=60)
REGISTRATION_BONUS = env_int("REGISTRATION_BONUS", default=600)
DAILY_CHECKIN_REWARD = env_int("DAILY_CHECKIN_REWARD", default=200)
DAILY_CHECKIN_ENABLED = env_flag("DAILY_CHECKIN_ENABLED", default=True)
EDIT_LEASE_SECONDS = env_int("EDIT_LEASE_SECONDS", default=FULFILLMENT_TIMEOUT_SECONDS + 60)
APPEAL_REJECT_NOTE_MIN_LENGTH = env_int("APPEAL_REJECT_NOTE_MIN_LENGTH", default=5)

# ================== DATABASE ==================

DATABASE_URL = os.environ.get("DATABASE_URL", "")
STORE_RETRY_ATTEMPTS = env_int("STORE_RETRY_ATTEMPTS", default=3)
SQLITE_BUSY_TIMEOUT_SECONDS = float(env("SQLITE_BUSY_TIMEOUT_SECONDS", default="30"))

def get_database_url() -> str:
    """Get database URL - supports SQLite or MySQL."""
    if DATABASE_URL:
        return DATABASE_URL

    mysql_host = os.environ.get("MYSQL_HOST")
    if mysql_host and mysql_host != "127.0.0.1":
        mysql_port = int(os.environ.get("MYSQL_PORT", "3306"))
        mysql_user = os.environ.get("MYSQL_USER", "root")
        mysql_password = os.environ.get("MYSQL_PASSWORD", "")
        mysql_db = os.environ.get("MYSQL_DB", "storefront")
        return f"mysql+aiomysql://{mysql_user}:{mysql_password}@{mysql_host}:{mysql_port}/{mysql_db}?charset=utf8mb4"

    db_path = ROOT_DIR / "storefront" / "storefront.db"
    return f"sqlite+aiosqlite:///{db_path}"
