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

    # Bearer token for the internal /api/* routes (checkout + back office).
    INTERNAL_API_KEY = os.environ.get("INTERNAL_API_KEY")
    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:5000")

    # --- Payment session provider ---
    PAYMENT_PROVIDER = os.environ.get("PAYMENT_PROVIDER", "tj")  # tj | vesicash
    PAYMENT_SESSION_TTL_MINUTES = int(
        os.environ.get("PAYMENT_SESSION_TTL_MINUTES", 30)
    )

    # Transaction Junction: hosted payment page, HMAC-signed webhooks.
    TJ_API_BASE_URL = os.environ.get(
        "TJ_API_BASE_URL", "https://api.transactionjunction.example/v1"
    )
    TJ_CREATE_SESSION_PATH = os.environ.get("TJ_CREATE_SESSION_PATH", "/hpp/sessions")
    TJ_LOOKUP_PATH = os.environ.get("TJ_LOOKUP_PATH", "/transactions/lookup")
    TJ_AUTH_MODE = os.environ.get("TJ_AUTH_MODE", "oauth2")  # oauth2 | api_key
    TJ_API_KEY = os.environ.get("TJ_API_KEY")
    TJ_CLIENT_ID = os.environ.get("TJ_CLIENT_ID")
    TJ_CLIENT_SECRET = os.environ.get("TJ_CLIENT_SECRET")
    TJ_OAUTH_TOKEN_URL = os.environ.get("TJ_OAUTH_TOKEN_URL")
    TJ_OAUTH_SCOPE = os.environ.get("TJ_OAUTH_SCOPE", "payments")
    TJ_WEBHOOK_SECRET = os.environ.get("TJ_WEBHOOK_SECRET")

    # Vesicash: escrow release + vendor payouts, optional session provider.
    VESICASH_API_URL = os.environ.get("VESICASH_API_URL", "https://api.vesicash.com/v1")
    VESICASH_API_KEY = os.environ.get("VESICASH_API_KEY")          # bearer, escrow/payout
    VESICASH_PUBLIC_KEY = os.environ.get("VESICASH_PUBLIC_KEY")    # V-PUBLIC-KEY, sessions
    VESICASH_WEBHOOK_SECRET = os.environ.get("VESICASH_WEBHOOK_SECRET")

    # --- Outbound calls ---
    GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", 15))

    # --- Background jobs ---
    RESERVATION_SWEEP_BATCH_SIZE = int(os.environ.get("RESERVATION_SWEEP_BATCH_SIZE", 100))
    AUTO_RELEASE_AFTER_HOURS = int(os.environ.get("AUTO_RELEASE_AFTER_HOURS", 72))
    AUTO_RELEASE_BATCH_SIZE = int(os.environ.get("AUTO_RELEASE_BATCH_SIZE", 50))
    PAYOUT_RECONCILE_AFTER_MINUTES = int(
        os.environ.get("PAYOUT_RECONCILE_AFTER_MINUTES", 15)
    )
    # Payout trigger runs in a background thread after the escrow commit.
    PAYOUT_DISPATCH_ASYNC = _env_flag("PAYOUT_DISPATCH_ASYNC", "true")
    PAYOUT_CURRENCY = os.environ.get("PAYOUT_CURRENCY", "ZMW")

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "INTERNAL_API_KEY",
            "TJ_WEBHOOK_SECRET",
            "VESICASH_API_KEY",
            "APP_BASE_URL",
        ]
        provider = os.environ.get("PAYMENT_PROVIDER", "tj")
        if provider == "vesicash":
            required.append("VESICASH_PUBLIC_KEY")
        elif os.environ.get("TJ_AUTH_MODE", "oauth2") == "api_key":
            required.append("TJ_API_KEY")
        else:
            required += ["TJ_CLIENT_ID", "TJ_CLIENT_SECRET", "TJ_OAUTH_TOKEN_URL"]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True


class TestConfig(Config):
    """Testing: in-memory SQLite, payouts dispatched inline."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    INTERNAL_API_KEY = "internal_test_key"
    APP_BASE_URL = "http://localhost:5000"
    PAYMENT_PROVIDER = "tj"
    TJ_API_BASE_URL = "https://tj.test/v1"
    TJ_AUTH_MODE = "api_key"
    TJ_API_KEY = "tj_test_key"
    TJ_CLIENT_ID = "tj_client_test"
    TJ_CLIENT_SECRET = "tj_secret_test"
    TJ_OAUTH_TOKEN_URL = "https://tj.test/oauth/token"
    TJ_WEBHOOK_SECRET = "whsec_tj_test"
    VESICASH_API_URL = "https://vesicash.test/v1"
    VESICASH_API_KEY = "vk_test"
    VESICASH_PUBLIC_KEY = "vpk_test"
    VESICASH_WEBHOOK_SECRET = "whsec_vesicash_test"
    GATEWAY_TIMEOUT_SECONDS = 5
    PAYOUT_DISPATCH_ASYNC = False  # run the payout processor inline in tests
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode, everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
