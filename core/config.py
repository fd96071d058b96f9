import os
import logging
from dotenv import load_dotenv

# Load .env from project root
try:
    load_dotenv(dotenv_path=os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".env")))
except Exception:
    try:
        load_dotenv()
    except Exception:
        pass


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


# Environment
APP_NAME = os.getenv("APP_NAME", "Affiliate Ledger")
DATABASE_URL = (os.getenv("DATABASE_URL", "") or "").strip().strip('"').strip("'")

# Admin access (header X-Admin-Secret)
ADMIN_SECRET = (os.getenv("ADMIN_SECRET", "") or "").strip()
ADMIN_ALLOWLIST_IPS = [ip.strip() for ip in (os.getenv("ADMIN_ALLOWLIST_IPS", "").split(",") if os.getenv("ADMIN_ALLOWLIST_IPS") else []) if ip.strip()]

# Portal tokens (HS256). Closers fall back to the affiliate secret when unset.
AFFILIATE_JWT_SECRET = (os.getenv("AFFILIATE_JWT_SECRET", "") or os.getenv("SECRET_KEY", "")).strip()
CLOSER_JWT_SECRET = (os.getenv("CLOSER_JWT_SECRET", "") or AFFILIATE_JWT_SECRET).strip()
PORTAL_JWT_TTL_HOURS = _env_int("PORTAL_JWT_TTL_HOURS", 24)

# Tracking cookie
TRACKING_COOKIE_NAME = os.getenv("TRACKING_COOKIE_NAME", "affiliate_ref").strip() or "affiliate_ref"
TRACKING_COOKIE_SECRET = (os.getenv("TRACKING_COOKIE_SECRET", "") or os.getenv("SECRET_KEY", "")).strip()
TRACKING_COOKIE_DAYS = _env_int("TRACKING_COOKIE_DAYS", 30)
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "").lower() in ("1", "true", "yes")

# Attribution / statistics
CLICK_DEDUP_MINUTES = _env_int("CLICK_DEDUP_MINUTES", 60)
STATS_TIMEZONE = (os.getenv("STATS_TIMEZONE", "UTC") or "UTC").strip()
ALL_TIME_BUCKETS = _env_int("ALL_TIME_BUCKETS", 90)

# Commission release batches
COMMISSION_RELEASE_BATCH_SIZE = _env_int("COMMISSION_RELEASE_BATCH_SIZE", 500)

# HTTP surface
ALLOWED_ORIGINS = [o.strip() for o in (os.getenv("ALLOWED_ORIGINS", "") or "").split(",") if o.strip()]
REDIS_URL = (os.getenv("REDIS_URL", "") or "").strip()
TRACKING_RATE_LIMIT = _env_int("TRACKING_RATE_LIMIT", 120)
ADMIN_RATE_LIMIT = _env_int("ADMIN_RATE_LIMIT", 30)

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
logger = logging.getLogger("affiliate_ledger")

