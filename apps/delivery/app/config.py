import os


def _env(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


ENV = _env("ENV", "dev").lower()
DB_URL = _env("DELIVERY_DB_URL", _env("DB_URL", "sqlite+pysqlite:////tmp/delivery.db"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")
INTERNAL_SECRET = os.getenv("DELIVERY_INTERNAL_SECRET", "")

# Lalamove
LALAMOVE_API_KEY = os.getenv("LALAMOVE_API_KEY", "")
LALAMOVE_API_SECRET = os.getenv("LALAMOVE_API_SECRET", "")
LALAMOVE_BASE_URL = _env("LALAMOVE_BASE_URL", "https://rest.sandbox.lalamove.com")
LALAMOVE_MARKET = _env("LALAMOVE_MARKET", "TH")
LALAMOVE_SERVICE_TYPE = _env("LALAMOVE_SERVICE_TYPE", "MOTORCYCLE")
LALAMOVE_LANGUAGE = _env("LALAMOVE_LANGUAGE", "th_TH")
LALAMOVE_WEBHOOK_SECRET = os.getenv("LALAMOVE_WEBHOOK_SECRET") or LALAMOVE_API_SECRET

COURIER_MAX_ATTEMPTS = int(_env("COURIER_MAX_ATTEMPTS", "3"))
COURIER_BACKOFF_BASE_SECS = float(_env("COURIER_BACKOFF_BASE_SECS", "1.0"))
COURIER_BACKOFF_MAX_SECS = float(_env("COURIER_BACKOFF_MAX_SECS", "8.0"))
COURIER_TIMEOUT_SECS = float(_env("COURIER_TIMEOUT_SECS", "10"))
# Wall-clock budget for one logical provider call, retries included.
COURIER_DEADLINE_SECS = float(_env("COURIER_DEADLINE_SECS", "30"))

# Pricing and service area
MAX_DISTANCE_KM = float(_env("DELIVERY_MAX_DISTANCE_KM", "30"))
BASE_FEE = int(_env("DELIVERY_BASE_FEE", "40"))
PER_KM_FEE = int(_env("DELIVERY_PER_KM_FEE", "8"))
FEE_CAP = int(_env("DELIVERY_FEE_CAP", "300"))
COD_FEE = int(_env("DELIVERY_COD_FEE", "40"))

# Scheduling
CUTOFF_HOURS = int(_env("DELIVERY_CUTOFF_HOURS", "3"))
HORIZON_DAYS = int(_env("DELIVERY_HORIZON_DAYS", "14"))
SHOP_TIMEZONE = _env("SHOP_TIMEZONE", "Asia/Bangkok")
SLOT_LOCALE = _env("SLOT_LOCALE", "th")
DEFAULT_SHIPPING_DAYS = ["mon", "tue", "wed", "thu", "fri"]
DEFAULT_SHIPPING_TIME = "14:00"

# Checkout
ORDER_NUMBER_PREFIX = _env("ORDER_NUMBER_PREFIX", "TPS")
CHECKOUT_MAX_PER_PHONE = int(_env("CHECKOUT_MAX_PER_PHONE", "10"))
CHECKOUT_RATE_WINDOW_SECS = int(_env("CHECKOUT_RATE_WINDOW_SECS", "600"))

# Dispatch
DISPATCH_CLAIM_TTL_SECS = int(_env("DISPATCH_CLAIM_TTL_SECS", "900"))

# Notifications
NOTIFY_ENABLED = _env("NOTIFY_ENABLED", "false").lower() == "true"
NOTIFY_REDIS_URL = _env("NOTIFY_REDIS_URL", "redis://localhost:6379/0")


def lalamove_configured() -> bool:
    return bool(LALAMOVE_API_KEY and LALAMOVE_API_SECRET)


def enforce_webhook_secret_baseline() -> None:
    """
    Fail fast outside dev/test when Lalamove is wired up but no webhook
    secret is available: every courier callback would be rejected.
    """
    if ENV not in ("dev", "test") and lalamove_configured() and not LALAMOVE_WEBHOOK_SECRET:
        raise RuntimeError("LALAMOVE_WEBHOOK_SECRET must be set in non-dev environments")
