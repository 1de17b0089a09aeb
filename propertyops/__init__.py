import os

from flask import Flask, jsonify
from flask_cors import CORS

from propertyops.models import db
from propertyops.logging_config import configure_logging, get_logger
from propertyops.adapters import build_adapter_registry
from propertyops.errors import PropertyOpsError
from propertyops.services.billing_export_service import BillingExportService
from propertyops.services.outbox_handlers import build_handler_registry
from propertyops.services.outbox_processor import OutboxProcessor
from propertyops.services.outbox_scheduler import OutboxScheduler

logger = get_logger(__name__)


def init_scheduler(app, processor):
    """Start the recurring outbox task for this process, if enabled."""
    if not app.config.get("OUTBOX_SCHEDULER_ENABLED"):
        logger.info("Outbox scheduler disabled for this process")
        return None

    # --- With the debug reloader only the child process runs the scheduler ---
    if app.debug and os.environ.get("WERKZEUG_RUN_MAIN") != "true":
        logger.info("Skipping scheduler startup in reloader parent")
        return None

    scheduler = OutboxScheduler(
        app,
        processor,
        interval_seconds=app.config.get("OUTBOX_POLL_INTERVAL_SECONDS", 10),
    )
    scheduler.start()
    return scheduler


def create_app(config_class=None):
    # Import config after dotenv is loaded
    from propertyops.config import get_config
    from propertyops.db_config import configure_database

    config_class = config_class or get_config()

    app = Flask(__name__)
    app.config.from_object(config_class)

    configure_logging(
        log_level=app.config.get("LOG_LEVEL", "INFO"),
        log_file=app.config.get("LOG_FILE"),
    )

    configure_database(app)

    logger.info(f"Starting application in {config_class.ENV} environment")
    logger.info(f"Database URI: {app.config.get('SQLALCHEMY_DATABASE_URI', 'Not set')[:50]}...")

    allowed_origins = app.config.get("CORS_ORIGINS", "*")
    if allowed_origins != "*":
        allowed_origins = [origin.strip() for origin in allowed_origins.split(",")]

    CORS(app,
         resources={r"/*": {"origins": allowed_origins}},
         supports_credentials=True,
         allow_headers=["Content-Type", "Authorization", "X-User-Id", "X-Request-Id"],
         methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"])

    # Tables are created by migrations/create_outbox_tables.py, not at startup
    db.init_app(app)

    # --- Outbox wiring ---
    adapters = build_adapter_registry(app.config)
    handlers = build_handler_registry(app.config, adapters)
    processor = OutboxProcessor.from_config(app.config, handlers)

    app.extensions["export_adapters"] = adapters
    app.extensions["outbox_handlers"] = handlers
    app.extensions["outbox_processor"] = processor
    app.extensions["billing_export_service"] = BillingExportService(adapters)

    from propertyops.billing import billing_bp
    from propertyops.outbox import outbox_bp
    from propertyops.audit import audit_bp

    app.register_blueprint(billing_bp, url_prefix="/billing")
    app.register_blueprint(outbox_bp, url_prefix="/outbox")
    app.register_blueprint(audit_bp, url_prefix="/audit")

    @app.errorhandler(PropertyOpsError)
    def handle_app_error(e):
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Handle all exceptions and return JSON with the right status code"""
        logger.error("Unhandled exception", error=str(e), exc_info=True)

        if hasattr(e, 'code') and isinstance(e.code, int):
            status_code = e.code
        elif hasattr(e, 'status_code'):
            status_code = e.status_code
        else:
            status_code = 500

        response = jsonify({
            "error": str(e),
            "message": "An error occurred processing your request"
        })
        response.status_code = status_code
        return response

    @app.teardown_appcontext
    def shutdown_session(exception=None):
        if exception is not None:
            db.session.rollback()

    # Initialize scheduler safely
    try:
        app.extensions["outbox_scheduler"] = init_scheduler(app, processor)
    except Exception as e:
        logger.error("Failed to start outbox scheduler", error=str(e))
        app.extensions["outbox_scheduler"] = None

    return app
