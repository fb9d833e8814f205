"""Central logging configuration.

Installs one stdout handler on the root logger so every `fpms.*` module
logger emits without per-module setup. Calling it twice is harmless.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Optional


def _dict_config(level: str) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)s:%(name)s:%(message)s",
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "default",
                "stream": "ext://sys.stdout",
            }
        },
        "root": {"level": level, "handlers": ["console"]},
        "loggers": {
            "sqlalchemy.engine": {"level": "WARNING"},
        },
    }


def configure_logging(level: Optional[str] = None) -> None:
    """Configure application-wide logging once.

    If the root logger already has handlers (test runners, host applications),
    leave it alone to avoid duplicate output.
    """
    root = logging.getLogger()
    if root.handlers:
        return
    if level is None:
        from fpms.config import load_settings

        level = load_settings().log_level
    dictConfig(_dict_config(level))


__all__ = ["configure_logging"]
