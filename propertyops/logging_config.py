import logging.config
import structlog
import uuid
from typing import Optional
import sys

from propertyops.datetime_utils import utcnow


def configure_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """
    Route structlog through stdlib logging: console always, rotating JSON file when log_file is set.

    APScheduler is held at WARNING so every outbox tick does not log its own
    "job executed" lines next to ours.
    """
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": "plain",
            "stream": sys.stdout,
        }
    }
    if log_file:
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": log_level,
            "formatter": "plain",
            "filename": log_file,
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5,
        }

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            # The message is already the JSON rendered by structlog
            "plain": {"format": "%(message)s"},
        },
        "handlers": handlers,
        "root": {"level": log_level, "handlers": list(handlers)},
        "loggers": {
            "apscheduler": {"level": "WARNING"},
        },
    })

    logger = structlog.get_logger("propertyops")
    logger.info("Logging configured", level=log_level, file=log_file)
    return logger


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class ProcessingContext:
    """Context manager for background processing runs with a correlation ID.

    Used around each outbox tick so that every log line of one run can be
    tied together, and so start/finish/duration are always recorded.
    """

    def __init__(self, operation_type: str, operation_id: Optional[str] = None):
        self.operation_type = operation_type
        self.operation_id = operation_id or str(uuid.uuid4())[:8]
        self.logger = get_logger("propertyops.processing")
        self.start_time = None
        self.result = None

    def __enter__(self):
        self.start_time = utcnow()
        self.logger.debug(
            "Processing run started",
            operation_type=self.operation_type,
            operation_id=self.operation_id,
            start_time=self.start_time.isoformat()
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = (utcnow() - self.start_time).total_seconds()

        if exc_type is None:
            self.logger.debug(
                "Processing run completed",
                operation_type=self.operation_type,
                operation_id=self.operation_id,
                duration_seconds=duration,
                result=self.result,
                status="success"
            )
        else:
            self.logger.error(
                "Processing run failed",
                operation_type=self.operation_type,
                operation_id=self.operation_id,
                duration_seconds=duration,
                status="error",
                error_type=exc_type.__name__,
                error_message=str(exc_val)
            )

        return False  # Don't suppress exceptions
