# backend/core/config.py
import os
from decimal import Decimal
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

# ================== ENV ==================

ROOT_DIR = Path(__file__).resolve().parents[2]
load_dotenv(ROOT_DIR / "backend/.env", override=False)

def env(*names: str, default: Optional[str] = None) -> str:
    for n in names:
        v = os.environ.get(n)
        if v is not None and str(v).strip() != "":
            return v
    if default is not None:
        return default
    raise KeyError(f"Missing required env var. Tried: {', '.join(names)}")

def env_list(name: str, default: str = "") -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]

# ================== JWT ==================

JWT_SECRET = os.environ.get("JWT_SECRET", "default_secret_key")
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = int(os.environ.get("JWT_EXPIRATION_HOURS", "24"))

# ================== DATABASE ==================

DATABASE_URL = os.environ.get("DATABASE_URL", "")

def get_database_url() -> str:
    """Get database URL - supports SQLite or MySQL."""
    if DATABASE_URL:
        return DATABASE_URL

    mysql_host = os.environ.get("MYSQL_HOST")
    if mysql_host:
        mysql_port = int(os.environ.get("MYSQL_PORT", "3306"))
        mysql_user = os.environ.get("MYSQL_USER", "root")
        mysql_password = os.environ.get("MYSQL_PASSWORD", "")
        mysql_db = os.environ.get("MYSQL_DB", "billing")
        return f"mysql+aiomysql://{mysql_user}:{mysql_password}@{mysql_host}:{mysql_port}/{mysql_db}?charset=utf8mb4"

    db_path = ROOT_DIR / "backend" / "billing.db"
    return f"sqlite+aiosqlite:///{db_path}"

# ================== APP ==================

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")
LOG_DIR = os.getenv("LOG_DIR", "logs")
PROOF_UPLOAD_DIR = Path(os.getenv("PROOF_UPLOAD_DIR", str(ROOT_DIR / "backend" / "uploads" / "payment-proofs")))

# ================== BILLING ==================

# Single-currency system; the gateway never sees anything else.
DEFAULT_CURRENCY = "USD"

FREE_PACKAGE_SLUG = os.getenv("FREE_PACKAGE_SLUG", "free")
REFUND_WINDOW_DAYS = int(os.getenv("REFUND_WINDOW_DAYS", "7"))

TRIAL_PLACEHOLDER_AMOUNT = Decimal(os.getenv("TRIAL_PLACEHOLDER_AMOUNT", "0.00"))
TRIAL_PERIOD_DAYS = int(os.getenv("TRIAL_PERIOD_DAYS", "3"))

# Pending transactions older than this are auto-cancelled by the stale sweep
STALE_PENDING_HOURS = int(os.getenv("STALE_PENDING_HOURS", "24"))

HISTORY_MAX_RECORDS_PER_SOURCE = int(os.getenv("HISTORY_MAX_RECORDS_PER_SOURCE", "1000"))
HISTORY_DEFAULT_PAGE_SIZE = 20
HISTORY_MAX_PAGE_SIZE = 100

DISALLOWED_EMAIL_DOMAINS = env_list(
    "DISALLOWED_EMAIL_DOMAINS", "tempmail.com,10minutemail.com,guerrillamail.com"
)
PHONE_REQUIRED_COUNTRIES = env_list("PHONE_REQUIRED_COUNTRIES", "Indonesia")

# ================== PROOF OF PAYMENT ==================

MAX_PROOF_FILE_SIZE = 5 * 1024 * 1024  # 5MB
ALLOWED_PROOF_CONTENT_TYPES = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "application/pdf": ".pdf",
}
