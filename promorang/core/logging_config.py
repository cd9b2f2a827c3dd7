from __future__ import annotations

import logging.config
import sys


def setup_logging(log_level: str = "INFO") -> None:
    log_level = log_level.upper()

    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "simple": {
                "format": "%(asctime)s | %(levelname)-8s | %(name)-28s | %(message)s",
            },
        },
        "handlers": {
            "console": {
                "formatter": "simple",
                "class": "logging.StreamHandler",
                "stream": sys.stdout,
            },
        },
        "loggers": {
            "": {
                "handlers": ["console"],
                "level": log_level,
            },
            "uvicorn.error": {
                "handlers": ["console"],
                "level": log_level,
                "propagate": False,
            },
            "uvicorn.access": {
                "handlers": ["console"],
                "level": "WARNING",
                "propagate": False,
            },
            # SQL 日志太吵，只保留警告
            "sqlalchemy.engine": {
                "level": "WARNING",
            },
        },
    }
    logging.config.dictConfig(config)
