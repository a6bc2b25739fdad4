import os
import logging

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.critical(f"{name} must be an integer, got {raw!r}. Using default {default}.")
        return default


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.critical(f"{name} must be a number, got {raw!r}. Using default {default}.")
        return default


# Telegram
BOT_TOKEN = os.getenv("BOT_TOKEN")
ADMIN_ID = _get_int("ADMIN_ID", 0)
STORE_NAME = os.getenv("STORE_NAME", "b7Store")
CONTACT_URL = os.getenv("CONTACT_URL", "https://t.me/admin_b7store")

# Persistence
DB_URI = os.getenv("DB_URI", "sqlite:///storefront.db")

# Payment gateway
PAYMENT_API_ID = os.getenv("PAYMENT_API_ID", "")
PAYMENT_API_KEY = os.getenv("PAYMENT_API_KEY", "")
PAYMENT_BASE_URL = os.getenv("PAYMENT_BASE_URL", "https://sakurupiah.id/api")
PAYMENT_CALLBACK_URL = os.getenv("PAYMENT_CALLBACK_URL", "")
PAYMENT_RETURN_URL = os.getenv("PAYMENT_RETURN_URL", "")
PAYMENT_EXPIRY_HOURS = _get_int("PAYMENT_EXPIRY_HOURS", 24)

# Game provider
PROVIDER_API_ID = os.getenv("PROVIDER_API_ID", "")
PROVIDER_API_KEY = os.getenv("PROVIDER_API_KEY", "")
PROVIDER_BASE_URL = os.getenv("PROVIDER_BASE_URL", "https://vip-reseller.co.id/api")

# Inbound payment webhook
WEBHOOK_HOST = os.getenv("WEBHOOK_HOST", "0.0.0.0")
WEBHOOK_PORT = _get_int("WEBHOOK_PORT", 8080)
WEBHOOK_PATH = os.getenv("WEBHOOK_PATH", "/callback/payment")

# Sessions
SESSION_TTL_HOURS = _get_int("SESSION_TTL_HOURS", 24)
SESSION_CLEANUP_HOURS = _get_int("SESSION_CLEANUP_HOURS", 24)
SESSION_EXPIRY_DAYS = _get_int("SESSION_EXPIRY_DAYS", 7)

# Throttling
RATE_LIMIT_SECONDS = _get_float("RATE_LIMIT_SECONDS", 1.0)
RATE_LIMIT_NOTICE_SECONDS = _get_float("RATE_LIMIT_NOTICE_SECONDS", 10.0)
NICKNAME_WINDOW_SECONDS = _get_float("NICKNAME_WINDOW_SECONDS", 120.0)
NICKNAME_MAX_REQUESTS = _get_int("NICKNAME_MAX_REQUESTS", 5)
RATE_LIMIT_SWEEP_SECONDS = _get_float("RATE_LIMIT_SWEEP_SECONDS", 60.0)

# Locks
LOCK_TIMEOUT_SECONDS = _get_float("LOCK_TIMEOUT_SECONDS", 30.0)
LOCK_SWEEP_SECONDS = _get_float("LOCK_SWEEP_SECONDS", 60.0)

# Remote calls
API_TIMEOUT_SECONDS = _get_float("API_TIMEOUT_SECONDS", 15.0)

# Rendering
QR_IMAGE_URL = os.getenv("QR_IMAGE_URL", "https://quickchart.io/qr")
PAGE_SIZE = _get_int("PAGE_SIZE", 10)
HISTORY_LIMIT = _get_int("HISTORY_LIMIT", 5)


def missing_required() -> list:
    """Return the names of required settings that are not configured."""
    missing_vars = []
    if not BOT_TOKEN:
        missing_vars.append("BOT_TOKEN")
    if not ADMIN_ID:
        missing_vars.append("ADMIN_ID")
    return missing_vars
