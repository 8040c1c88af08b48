import logging
import os
from logging.config import dictConfig
from typing import Dict

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Loggers that are noisy at INFO; raised to WARNING unless overridden.
_QUIET_LOGGERS = ("sqlalchemy.pool", "uvicorn.access")


def parse_logger_levels(raw: str) -> Dict[str, str]:
    """Parse ``name=LEVEL`` pairs separated by commas; malformed pairs are skipped."""
    levels: Dict[str, str] = {}
    for chunk in raw.split(","):
        name, sep, level = chunk.partition("=")
        name, level = name.strip(), level.strip().upper()
        if not sep or not name or not isinstance(logging.getLevelName(level), int):
            continue
        levels[name] = level
    return levels


def configure_logging() -> None:
    """Configure process logging from ``STUDY_CALENDAR_*`` environment flags."""
    level = os.getenv("STUDY_CALENDAR_LOG_LEVEL", "INFO").upper()
    overrides: Dict[str, str] = {name: "WARNING" for name in _QUIET_LOGGERS}
    if os.getenv("STUDY_CALENDAR_DEBUG_SQL", "0") == "1":
        overrides["sqlalchemy.engine"] = "INFO"
    if os.getenv("STUDY_CALENDAR_DEBUG_HTTP", "0") == "1":
        overrides["uvicorn.access"] = "DEBUG"
    overrides.update(parse_logger_levels(os.getenv("STUDY_CALENDAR_LOG_LEVELS", "")))

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": os.getenv("STUDY_CALENDAR_LOG_FORMAT", DEFAULT_LOG_FORMAT),
                },
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "loggers": {name: {"level": value} for name, value in overrides.items()},
            "root": {
                "handlers": ["default"],
                "level": level,
            },
        }
    )
