"""Logging configuration shared by the dispatcher and the realtime transport."""

from __future__ import annotations

import logging.config

from app.config import Settings, get_settings


def build_logging_config(settings: Settings) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
            }
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "standard",
            }
        },
        "root": {
            "handlers": ["default"],
            "level": settings.log_level,
        },
        "loggers": {
            "pingpong.realtime.transport": {
                "handlers": ["default"],
                "level": "INFO",
                "propagate": False,
            },
            "sqlalchemy.engine": {
                "level": "INFO" if settings.debug else "WARNING",
            },
        },
    }


def configure_logging(settings: Settings | None = None) -> None:
    """Apply the logging configuration; call once at process start."""

    logging.config.dictConfig(build_logging_config(settings or get_settings()))
