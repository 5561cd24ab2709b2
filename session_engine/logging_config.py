import logging
import os
from logging.config import dictConfig
from typing import Dict

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
TELEMETRY_LOGGER = "session_engine.telemetry"
HTTP_LOGGERS = ("httpx", "openai")


def _level(variable: str, default: str) -> str:
    return os.getenv(variable, default).upper()


def logging_levels() -> Dict[str, str]:
    """Per-logger levels for the engine, its telemetry stream and the HTTP clients."""
    engine = _level("SESSION_ENGINE_LOG_LEVEL", "INFO")
    http = "DEBUG" if os.getenv("SESSION_ENGINE_DEBUG_HTTP", "0") == "1" else "WARNING"
    levels = {
        "session_engine": engine,
        TELEMETRY_LOGGER: _level("SESSION_ENGINE_TELEMETRY_LOG_LEVEL", engine),
    }
    levels.update({name: http for name in HTTP_LOGGERS})
    return levels


def configure_logging() -> None:
    """Configure structured logging based on environment flags."""
    levels = logging_levels()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": DEFAULT_LOG_FORMAT,
                },
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "loggers": {name: {"level": level} for name, level in levels.items()},
            "root": {
                "handlers": ["default"],
                "level": levels["session_engine"],
            },
        }
    )
    logging.getLogger(__name__).debug("Logging configured: %s", levels)
