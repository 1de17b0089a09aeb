import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int_list(name, default):
    value = os.environ.get(name)
    if not value:
        return list(default)
    return [int(part.strip()) for part in value.split(",") if part.strip()]


class Config:
    """Base configuration class with common settings."""
    # Logging
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FILE = os.environ.get("LOG_FILE")  # None -> stdout only

    # Outbox processor
    OUTBOX_POLL_INTERVAL_SECONDS = int(os.environ.get("OUTBOX_POLL_INTERVAL_SECONDS", "10"))
    OUTBOX_BATCH_SIZE = int(os.environ.get("OUTBOX_BATCH_SIZE", "10"))
    OUTBOX_MAX_RETRIES = int(os.environ.get("OUTBOX_MAX_RETRIES", "5"))
    # 1m, 5m, 15m, 1h, 1h (index 0 is used for the first retry)
    OUTBOX_RETRY_BACKOFF_SECONDS = _env_int_list(
        "OUTBOX_RETRY_BACKOFF_SECONDS", [60, 300, 900, 3600, 3600]
    )
    OUTBOX_HANDLER_TIMEOUT_SECONDS = float(os.environ.get("OUTBOX_HANDLER_TIMEOUT_SECONDS", "30"))
    OUTBOX_SCHEDULER_ENABLED = _env_bool("OUTBOX_SCHEDULER_ENABLED", False)

    # Visma accounting integration
    VISMA_ADAPTER_MODE = os.environ.get("VISMA_ADAPTER_MODE", "stub").lower()
    VISMA_API_BASE_URL = os.environ.get("VISMA_API_BASE_URL")
    VISMA_API_TOKEN = os.environ.get("VISMA_API_TOKEN")
    VISMA_STUB_DELAY_SECONDS = float(os.environ.get("VISMA_STUB_DELAY_SECONDS", "0.1"))

    # CORS configuration
    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")


class LocalConfig(Config):
    """Configuration for local development."""
    ENV = "local"
    DEBUG = True
    OUTBOX_SCHEDULER_ENABLED = _env_bool("OUTBOX_SCHEDULER_ENABLED", True)


class SandboxConfig(Config):
    """Configuration for sandbox/staging environment."""
    ENV = "sandbox"
    DEBUG = False


class ProductionConfig(Config):
    """Configuration for production environment."""
    ENV = "production"
    DEBUG = False


class TestingConfig(Config):
    """Configuration for the test suite: in-memory SQLite, no background scheduler."""
    ENV = "testing"
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    OUTBOX_SCHEDULER_ENABLED = False
    OUTBOX_HANDLER_TIMEOUT_SECONDS = 5.0
    VISMA_ADAPTER_MODE = "stub"
    VISMA_STUB_DELAY_SECONDS = 0.0
    LOG_FILE = None


def get_config():
    """Get the appropriate configuration class based on environment variable.

    Environment is determined by FLASK_ENV or ENVIRONMENT variable:
    - 'local' or 'development' -> LocalConfig
    - 'sandbox' or 'staging' -> SandboxConfig
    - 'production' or 'prod' -> ProductionConfig
    - 'testing' or 'test' -> TestingConfig

    Defaults to LocalConfig if not set.
    """
    env = (os.environ.get("FLASK_ENV") or os.environ.get("ENVIRONMENT", "local")).lower()

    if env in ["local", "development", "dev"]:
        return LocalConfig
    elif env in ["sandbox", "staging", "stage"]:
        return SandboxConfig
    elif env in ["production", "prod"]:
        return ProductionConfig
    elif env in ["testing", "test"]:
        return TestingConfig
    else:
        # Default to local for safety
        return LocalConfig
