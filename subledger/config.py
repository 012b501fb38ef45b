import os


def _optional_int(name: str):
    raw = (os.getenv(name) or "").strip()
    return int(raw) if raw else None


class BaseConfig:
    # Secrets (env in prod; dev/test may use defaults)
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")

    # Database (env in prod; dev/test may use default)
    try:
        from dotenv import dotenv_values
        _ENV_FALLBACK = dotenv_values(".env")
    except OSError:
        _ENV_FALLBACK = {}
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _ENV_FALLBACK.get("DATABASE_URL") or "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging / misc
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Flask-Limiter default: off globally; prefer per-route limits
    RATELIMIT_DEFAULT = None

    # Used for provider return/cancel URLs (PayPal approval flow)
    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5000")
    BRAND_NAME = os.getenv("BRAND_NAME", "Subledger")

    # --- Providers ---
    DEFAULT_PROVIDER = os.getenv("DEFAULT_PROVIDER", "stripe")
    PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "15"))

    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    # Metered prices on SDKs without legacy usage records report through this meter
    STRIPE_METER_EVENT_NAME = os.getenv("STRIPE_METER_EVENT_NAME")

    PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID")
    PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET")
    PAYPAL_WEBHOOK_ID = os.getenv("PAYPAL_WEBHOOK_ID")
    # "sandbox" or "live"
    PAYPAL_ENVIRONMENT = os.getenv("PAYPAL_ENVIRONMENT", "sandbox").lower()

    # --- Ledger ---
    # Unset means cached rows are trusted without an age bound
    LEDGER_MAX_AGE_SECONDS = _optional_int("LEDGER_MAX_AGE_SECONDS")
    PLACEHOLDER_CUSTOMER_EMAIL = os.getenv("PLACEHOLDER_CUSTOMER_EMAIL", "unknown@example.com")
    PLACEHOLDER_CUSTOMER_NAME = os.getenv("PLACEHOLDER_CUSTOMER_NAME", "Unknown Customer")


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
    # REQUIRE env vars in production (fail fast if missing)
    SECRET_KEY = os.environ.get("SECRET_KEY")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL")
    PAYPAL_ENVIRONMENT = os.getenv("PAYPAL_ENVIRONMENT", "live").lower()


class TestingConfig(BaseConfig):
    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    RATELIMIT_ENABLED = False


_ENV_MAP = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}


def get_config():
    env = os.environ.get("APP_ENV", "development").lower()
    return _ENV_MAP.get(env, DevelopmentConfig)
