import os
import logging


def _flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in (
        "1", "true", "yes", "on"
    )


# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./tokodigital.db")

PAYMENT_PROVIDER = os.environ.get("PAYMENT_PROVIDER", "tripay").lower()
GATEWAY_TIMEOUT = float(os.environ.get("GATEWAY_TIMEOUT", "20"))

TRIPAY_BASE_URL = os.environ.get(
    "TRIPAY_BASE_URL", "https://tripay.co.id/api-sandbox"
)
TRIPAY_API_KEY = os.environ.get("TRIPAY_API_KEY", "")
TRIPAY_PRIVATE_KEY = os.environ.get("TRIPAY_PRIVATE_KEY", "")
TRIPAY_MERCHANT_CODE = os.environ.get("TRIPAY_MERCHANT_CODE", "")
TRIPAY_DEFAULT_METHOD = os.environ.get("TRIPAY_DEFAULT_METHOD", "QRIS")

MIDTRANS_SERVER_KEY = os.environ.get("MIDTRANS_SERVER_KEY", "")
MIDTRANS_IS_PRODUCTION = _flag("MIDTRANS_IS_PRODUCTION")
MIDTRANS_QRIS_ACQUIRER = os.environ.get("MIDTRANS_QRIS_ACQUIRER", "gopay")

PUBLIC_BASE_URL = os.environ.get(
    "PUBLIC_BASE_URL", "http://localhost:8000"
).rstrip("/")
WEBHOOK_PATH = "/payment/webhook"

TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN", "")
ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "dev-admin-token")
ADMIN_CONTACT = os.environ.get("ADMIN_CONTACT", "@admin")
# chat that gets "paid but out of stock" alerts; empty disables them
ADMIN_CHAT_ID = os.environ.get("ADMIN_CHAT_ID", "")

# reconciliation timers
ENABLE_SWEEPERS = _flag("ENABLE_SWEEPERS", "1")
SWEEP_INTERVAL_SECONDS = float(os.environ.get("SWEEP_INTERVAL_SECONDS", "120"))
STALE_SWEEP_INTERVAL_SECONDS = float(
    os.environ.get("STALE_SWEEP_INTERVAL_SECONDS", "900")
)
STALE_ORDER_HOURS = float(os.environ.get("STALE_ORDER_HOURS", "2"))
SWEEP_BATCH_SIZE = int(os.environ.get("SWEEP_BATCH_SIZE", "100"))
STALE_BATCH_SIZE = int(os.environ.get("STALE_BATCH_SIZE", "50"))
SWEEP_DELAY_SECONDS = float(os.environ.get("SWEEP_DELAY_SECONDS", "0.2"))
STALE_DELAY_SECONDS = float(os.environ.get("STALE_DELAY_SECONDS", "0.3"))

# buyer-triggered "check payment" debounce
CHECK_COOLDOWN_SECONDS = float(os.environ.get("CHECK_COOLDOWN_SECONDS", "2"))
THROTTLE_BACKEND = os.environ.get("THROTTLE_BACKEND", "memory").lower()
THROTTLE_MAX_KEYS = int(os.environ.get("THROTTLE_MAX_KEYS", "10000"))
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")

RETAIN_FAILED_ORDERS = _flag("RETAIN_FAILED_ORDERS")
PENDING_REUSE_SECONDS = float(os.environ.get("PENDING_REUSE_SECONDS", "30"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


def setup_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
