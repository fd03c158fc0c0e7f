"""Logging bootstrap for the selfie KYC controller."""
from __future__ import annotations

from logging.config import dictConfig
from pathlib import Path
from typing import Any, Dict

from .config import Settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_FILENAME = "kyc-selfie.log"


def build_logging_config(settings: Settings) -> Dict[str, Any]:
    """dictConfig schema for ``settings``: console always, daily-rotated file when enabled."""

    level = settings.log_level.upper()
    handlers: Dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "level": level,
        },
    }
    if settings.log_to_file:
        log_dir = Path(settings.log_directory).expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers["verification_file"] = {
            "class": "logging.handlers.TimedRotatingFileHandler",
            "formatter": "default",
            "level": level,
            "filename": str(log_dir / LOG_FILENAME),
            "when": "midnight",
            "backupCount": max(int(settings.log_retention_days), 1),
            "utc": True,
            "delay": True,
            "encoding": "utf-8",
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": {"format": LOG_FORMAT}},
        "handlers": handlers,
        # HTTP client libraries log every request at INFO, including bearer-carrying URLs
        "loggers": {name: {"level": "WARNING"} for name in settings.log_quiet_loggers},
        "root": {"level": level, "handlers": list(handlers)},
    }


def configure_logging(settings: Settings) -> None:
    dictConfig(build_logging_config(settings))


__all__ = ["build_logging_config", "configure_logging"]
