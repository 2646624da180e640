"""Logging setup shared by the web app and the CLI."""

import logging
import logging.config

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger.

    Safe to call more than once; ``dictConfig`` replaces the previous handler
    instead of stacking a new one.
    """
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "plain": {"format": LOG_FORMAT},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "plain",
            },
        },
        "root": {
            "handlers": ["console"],
            "level": (level or "INFO").upper(),
        },
        "loggers": {
            # SQL echo is noisy; keep it at WARNING unless explicitly raised
            "sqlalchemy.engine": {"level": "WARNING"},
            "httpx": {"level": "WARNING"},
        },
    })
