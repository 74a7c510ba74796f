import os
from dotenv import load_dotenv

load_dotenv() # Load .env file from project root if running locally


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


DATABASE_USER = os.getenv("POSTGRES_USER", "user")
DATABASE_PASSWORD = os.getenv("POSTGRES_PASSWORD", "password")
DATABASE_HOST = os.getenv("POSTGRES_HOST", "postgres") # Docker service name
DATABASE_PORT = os.getenv("POSTGRES_PORT", "5432")
DATABASE_NAME = os.getenv("POSTGRES_DB", "storefront_db")

# Async database URL for SQLAlchemy, DATABASE_URL wins when set
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+asyncpg://{DATABASE_USER}:{DATABASE_PASSWORD}@{DATABASE_HOST}:{DATABASE_PORT}/{DATABASE_NAME}",
)
DB_ECHO = _flag("DB_ECHO")

# For Uvicorn binding inside container
APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = int(os.getenv("APP_PORT", "8003"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Session tokens issued by the auth provider
JWT_SECRET = os.getenv("JWT_SECRET", "local-development-secret-change-me-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

KAFKA_BOOTSTRAP_SERVERS = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "kafka:9092")
ORDER_STATUS_UPDATE_TOPIC = os.getenv("ORDER_STATUS_UPDATE_TOPIC", "order_status_updates")
EVENTS_ENABLED = _flag("EVENTS_ENABLED", "true")

REDIS_HOST = os.getenv("REDIS_HOST", "redis")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_DB = int(os.getenv("REDIS_DB", "0"))
REDIS_ORDER_STATUS_TTL_SECONDS = int(os.getenv("REDIS_ORDER_STATUS_TTL_SECONDS", 3600)) # 1 hour

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com")
STRIPE_CURRENCY = os.getenv("STRIPE_CURRENCY", "usd")

PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID", "")
PAYPAL_SECRET = os.getenv("PAYPAL_SECRET", "")
PAYPAL_API_BASE = os.getenv("PAYPAL_API_BASE", "https://api.sandbox.paypal.com")
PAYPAL_CURRENCY = os.getenv("PAYPAL_CURRENCY", "USD")

PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "10.0"))

# Unknown shipping fee methods compute a fee of 0 unless strict mode is on
STRICT_SHIPPING_METHODS = _flag("STRICT_SHIPPING_METHODS")

# Destination used when the request carries no country cookie
DEFAULT_COUNTRY_NAME = os.getenv("DEFAULT_COUNTRY_NAME", "United States")
DEFAULT_COUNTRY_CODE = os.getenv("DEFAULT_COUNTRY_CODE", "US")

DEFAULT_SHIPPING_SERVICE = "International Delivery"
DEFAULT_DELIVERY_TIME_MIN = 7
DEFAULT_DELIVERY_TIME_MAX = 30
DEFAULT_RETURN_POLICY = (
    "We understand things don't always work out. You can return this item within 30 days "
    "of delivery for a full refund or exchange. Please ensure the item is in its original condition."
)
