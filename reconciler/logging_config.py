"""Logging setup shared by the API process and the retry queue consumer.

Usage:
    from reconciler.logging_config import configure_logging
    configure_logging("INFO")
"""

import logging
from logging.config import dictConfig


def get_log_level(level_name: str) -> int:
    """Resolve a level name, falling back to INFO for unknown names."""
    level = logging.getLevelName(level_name.upper())
    if isinstance(level, int):
        return level
    return logging.INFO


def configure_logging(log_level: str = "INFO") -> None:
    level = get_log_level(log_level)
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": "%(levelname)-8s %(asctime)s %(name)s [%(filename)s:%(lineno)d] - %(message)s",
                    "datefmt": "%H:%M:%S",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "stream": "ext://sys.stdout",
                },
            },
            "root": {"handlers": ["console"], "level": level},
            "loggers": {
                # SQL echo is far too chatty at INFO
                "sqlalchemy.engine": {"level": logging.WARNING},
                "aio_pika": {"level": logging.WARNING},
                "aiormq": {"level": logging.WARNING},
                "httpx": {"level": logging.WARNING},
            },
        }
    )
