import logging
import os
from logging.config import dictConfig
from typing import Any, Dict

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _level(variable: str, default: str) -> str:
    return os.getenv(variable, default).strip().upper() or default


def build_logging_config() -> Dict[str, Any]:
    """dictConfig payload for the API process, scripts and the sync job."""
    loggers: Dict[str, Dict[str, Any]] = {
        "sqlalchemy.engine": {"level": "WARNING"},
        "studyflow.telemetry": {"level": _level("STUDYFLOW_TELEMETRY_LOG_LEVEL", "INFO")},
    }
    if os.getenv("STUDYFLOW_DEBUG_HTTP", "0") == "1":
        for name in ("httpx", "httpcore", "uvicorn.access"):
            loggers[name] = {"level": "DEBUG"}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": {"format": DEFAULT_LOG_FORMAT}},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stderr",
            },
        },
        "root": {"handlers": ["console"], "level": _level("STUDYFLOW_LOG_LEVEL", "INFO")},
        "loggers": loggers,
    }


def configure_logging() -> None:
    dictConfig(build_logging_config())
    logging.getLogger(__name__).debug("Logging configured")
