"""
Centralized logging configuration for the entire application.
Ensures all loggers output to console with consistent formatting.
"""
import logging
import sys


def configure_logging(level: int = logging.DEBUG):
    """Configure logging for the entire application."""

    # Create root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove any existing handlers to avoid duplicates
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    # Create formatter with timestamp and module name
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Configure specific loggers
    logging.getLogger("main").setLevel(logging.DEBUG)
    logging.getLogger("app.engine").setLevel(logging.DEBUG)
    logging.getLogger("app.documents").setLevel(logging.DEBUG)
    logging.getLogger("app.approvals").setLevel(logging.DEBUG)
    logging.getLogger("app.session_store").setLevel(logging.DEBUG)
    logging.getLogger("app.db_operations").setLevel(logging.DEBUG)
    logging.getLogger("app.notifications").setLevel(logging.DEBUG)
    logging.getLogger("app.db").setLevel(logging.DEBUG)

    # SQLAlchemy logging - set to WARNING to reduce noise, but keep INFO for errors
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    # Uvicorn logging
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.INFO)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(name)
