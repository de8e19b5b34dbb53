import os


def _env_flag(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    # --- Payment gateway (Stripe) ---
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_PUBLISHABLE_KEY = os.environ.get("STRIPE_PUBLISHABLE_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    # Secret for the checkout signature HMAC(gateway_order_id|gateway_payment_id).
    # Falls back to the webhook secret when not set separately.
    PAYMENT_SIGNATURE_SECRET = (
        os.environ.get("PAYMENT_SIGNATURE_SECRET")
        or os.environ.get("STRIPE_WEBHOOK_SECRET")
    )
    GATEWAY_TIMEOUT_SECONDS = int(os.environ.get("GATEWAY_TIMEOUT_SECONDS", 10))
    GATEWAY_MAX_RETRIES = int(os.environ.get("GATEWAY_MAX_RETRIES", 0))
    STORE_NAME = os.environ.get("STORE_NAME", "Marketplace")

    # --- Checkout policy ---
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "inr")
    PAYMENT_METHODS = ("card", "upi", "cod", "wallet", "netbanking")
    DEFERRED_PAYMENT_METHODS = ("cod",)  # no gateway proof required
    PAYMENT_AMOUNT_EPSILON = float(os.environ.get("PAYMENT_AMOUNT_EPSILON", 0.01))
    ORDER_MAX_LINE_QUANTITY = int(os.environ.get("ORDER_MAX_LINE_QUANTITY", 10))
    ORDER_MAX_LINES = int(os.environ.get("ORDER_MAX_LINES", 50))

    # Client snapshot price vs live catalog price.
    # clamp_lower: charge the lower of the two | catalog: charge catalog price
    # reject: refuse the order
    PRICE_TOLERANCE_PERCENT = float(os.environ.get("PRICE_TOLERANCE_PERCENT", 10))
    PRICE_MISMATCH_POLICY = os.environ.get("PRICE_MISMATCH_POLICY", "clamp_lower")

    DEFAULT_COMMISSION_TYPE = "percentage"
    DEFAULT_COMMISSION_RATE = 30

    # auto | atomic | sequential (see services/unit_of_work.py)
    ORDER_TRANSACTION_MODE = os.environ.get("ORDER_TRANSACTION_MODE", "auto")

    # Gateway retry window is far shorter than this; older records are purged.
    WEBHOOK_EVENT_RETENTION_DAYS = int(
        os.environ.get("WEBHOOK_EVENT_RETENTION_DAYS", 30)
    )

    # --- Background tasks ---
    TASKS_EAGER = _env_flag("TASKS_EAGER")
    TASK_MAX_ATTEMPTS = int(os.environ.get("TASK_MAX_ATTEMPTS", 3))
    TASK_RETRY_DELAY_SECONDS = int(os.environ.get("TASK_RETRY_DELAY_SECONDS", 2))

    # --- Email (SMTP) ---
    MAIL_SMTP_HOST = os.environ.get("MAIL_SMTP_HOST", "smtp.gmail.com")
    MAIL_SMTP_PORT = int(os.environ.get("MAIL_SMTP_PORT", 587))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "Marketplace")
    MAIL_FROM_ADDRESS = os.environ.get("MAIL_FROM_ADDRESS")  # defaults to MAIL_USERNAME

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Session / cookies ---
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    REMEMBER_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_SAMESITE = "Lax"

    # --- WTF / CSRF ---
    # JSON clients send the token in the X-CSRFToken header.
    WTF_CSRF_ENABLED = True

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False


class TestConfig(Config):
    """Testing — in-memory SQLite, CSRF disabled, tasks run inline."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_PUBLISHABLE_KEY = "pk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    PAYMENT_SIGNATURE_SECRET = "sig_test_secret"
    DEFAULT_CURRENCY = "inr"
    PRICE_MISMATCH_POLICY = "clamp_lower"
    ORDER_TRANSACTION_MODE = "auto"
    TASKS_EAGER = True
    TASK_MAX_ATTEMPTS = 1
    MAIL_USERNAME = None  # never send real email from tests
    MAIL_PASSWORD = None
    WTF_CSRF_ENABLED = False
    RATELIMIT_ENABLED = False
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
