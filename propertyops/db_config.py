"""Database configuration and setup for different environments."""
import os


def get_database_engine_options():
    """Get database engine options for PostgreSQL connections."""
    from sqlalchemy.pool import QueuePool

    return {
        "pool_pre_ping": True,        # Detect and refresh dead connections before use
        "pool_recycle": 280,
        "pool_size": 5,
        "max_overflow": 10,           # Burst room for the outbox scheduler thread plus web workers
        "pool_timeout": 30,
        "pool_reset_on_return": "commit",
        "poolclass": QueuePool,
        "connect_args": {
            "sslmode": "require",
            "connect_timeout": 10,
            "application_name": "propertyops",
            "options": "-c statement_timeout=30000"  # 30s max per SQL statement
        },
    }


def get_local_database_config():
    """Get database configuration for local development.

    Returns:
        tuple: (database_uri, engine_options)
    """
    database_uri = os.environ.get("LOCAL_DATABASE_URL") or "sqlite:///propertyops.sqlite"
    engine_options = None  # SQLite doesn't need engine options
    return database_uri, engine_options


def get_sandbox_database_config():
    """Get database configuration for sandbox/staging environment.

    Raises:
        ValueError: If database URL is not configured
    """
    database_url = os.environ.get("SANDBOX_DATABASE_URL")
    if not database_url:
        raise ValueError("SANDBOX_DATABASE_URL must be set for sandbox environment")

    return database_url, get_database_engine_options()


def get_production_database_config():
    """Get database configuration for production environment.

    Raises:
        ValueError: If database URL is not configured
    """
    database_url = os.environ.get("PRODUCTION_DATABASE_URL") or os.environ.get("DATABASE_URL")
    if not database_url:
        raise ValueError("PRODUCTION_DATABASE_URL or DATABASE_URL must be set for production environment")

    if database_url.startswith("postgres://"):
        # SQLAlchemy expects postgresql://
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url, get_database_engine_options()


def get_database_config(environment=None):
    """Get database configuration based on environment.

    Args:
        environment: Environment name ('local', 'sandbox', 'production')
                    If None, will be determined from ENVIRONMENT or FLASK_ENV env vars.

    Returns:
        tuple: (database_uri, engine_options)
    """
    if environment is None:
        environment = os.environ.get("FLASK_ENV") or os.environ.get("ENVIRONMENT", "local")
        environment = environment.lower()

    if environment in ["local", "development", "dev"]:
        return get_local_database_config()
    elif environment in ["sandbox", "staging", "stage"]:
        return get_sandbox_database_config()
    elif environment in ["production", "prod"]:
        return get_production_database_config()
    else:
        return get_local_database_config()


def configure_database(app):
    """Configure database settings for the Flask app.

    A config class that already pins SQLALCHEMY_DATABASE_URI (e.g. the test
    configuration) wins over the environment lookup.

    Args:
        app: Flask application instance
    """
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config.setdefault("SQLALCHEMY_ECHO", False)

    if app.config.get("SQLALCHEMY_DATABASE_URI"):
        return

    database_uri, engine_options = get_database_config(app.config.get("ENV"))
    app.config["SQLALCHEMY_DATABASE_URI"] = database_uri

    if engine_options:
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options
