import os


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

    # --- Payment provider (Creem) ---
    PAYMENT_PROVIDER = os.environ.get("PAYMENT_PROVIDER", "creem")
    CREEM_API_KEY = os.environ.get("CREEM_API_KEY")
    CREEM_WEBHOOK_SECRET = os.environ.get("CREEM_WEBHOOK_SECRET")
    CREEM_ENVIRONMENT = os.environ.get("CREEM_ENVIRONMENT", "test_mode")  # test_mode | live_mode
    CREEM_REQUEST_TIMEOUT = float(os.environ.get("CREEM_REQUEST_TIMEOUT", 10))
    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:5000")

    # --- Billing policy ---
    # "single": a user with an active/trialing subscription cannot start
    # another subscription checkout. "multiple": concurrent subscriptions allowed.
    BILLING_SUBSCRIPTION_POLICY = os.environ.get(
        "BILLING_SUBSCRIPTION_POLICY", "single"
    )

    # Upper bound for a single webhook transaction (PostgreSQL only).
    WEBHOOK_STATEMENT_TIMEOUT_MS = int(
        os.environ.get("WEBHOOK_STATEMENT_TIMEOUT_MS", 5000)
    )

    # --- Credits ---
    NEW_USER_FREE_CREDITS = int(os.environ.get("NEW_USER_FREE_CREDITS", 3))

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
    WTF_CSRF_ENABLED = True

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "CREEM_API_KEY",
            "CREEM_WEBHOOK_SECRET",
            "APP_BASE_URL",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )

        policy = os.environ.get("BILLING_SUBSCRIPTION_POLICY", "single")
        if policy not in ("single", "multiple"):
            raise RuntimeError(
                f"BILLING_SUBSCRIPTION_POLICY must be 'single' or 'multiple', got {policy!r}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False


class TestConfig(Config):
    """Testing — in-memory SQLite, CSRF disabled."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    CREEM_API_KEY = "creem_test_fake"
    CREEM_WEBHOOK_SECRET = "whsec_test_fake"
    CREEM_ENVIRONMENT = "test_mode"
    APP_BASE_URL = "http://localhost:5000"
    BILLING_SUBSCRIPTION_POLICY = "single"
    NEW_USER_FREE_CREDITS = 3
    WTF_CSRF_ENABLED = False  # disable CSRF for test requests
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
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
