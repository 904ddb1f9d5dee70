"""Logging setup.

Application modules log through ``logging.getLogger(__name__)``. Security
relevant events (rejected uploads, forbidden access, quota breaches) go
through the dedicated ``docvault.security`` logger so they can be routed to
their own file.
"""
import json
import logging
import logging.config
import re
from pathlib import Path
from typing import Any, Dict, Optional

SECURITY_LOGGER_NAME = "docvault.security"

security_logger = logging.getLogger(SECURITY_LOGGER_NAME)

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_MAX_LOGGED_NAME = 50


def configure_logging(level: str = "INFO", log_path: Optional[str] = None) -> None:
    """Install console logging, plus app.log / security.log when log_path is set."""
    handlers: Dict[str, Dict[str, Any]] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "stream": "ext://sys.stderr",
        },
    }
    root_handlers = ["console"]
    security_handlers = ["console"]

    if log_path:
        log_dir = Path(log_path)
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers["app_file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "default",
            "filename": str(log_dir / "app.log"),
            "maxBytes": 5 * 1024 * 1024,
            "backupCount": 5,
        }
        handlers["security_file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "default",
            "filename": str(log_dir / "security.log"),
            "maxBytes": 5 * 1024 * 1024,
            "backupCount": 5,
        }
        root_handlers.append("app_file")
        security_handlers.append("security_file")

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": {"format": _LOG_FORMAT}},
        "handlers": handlers,
        "root": {"level": level.upper(), "handlers": root_handlers},
        "loggers": {
            SECURITY_LOGGER_NAME: {
                "level": "INFO",
                "handlers": security_handlers,
                "propagate": False,
            },
            # Quiet chatty libraries
            "sqlalchemy.engine": {"level": "WARNING"},
            "aiosqlite": {"level": "WARNING"},
        },
    })


def safe_filename_for_log(name: Optional[str]) -> Optional[str]:
    """Strip any directory part and truncate, so logs never carry client paths."""
    if name is None:
        return None
    return re.sub(r".*[/\\]", "", str(name))[:_MAX_LOGGED_NAME]


def log_security_event(event: str, level: int = logging.INFO, **fields: Any) -> None:
    """Emit one structured security event line."""
    if "filename" in fields:
        fields["filename"] = safe_filename_for_log(fields["filename"])
    payload = {k: v for k, v in fields.items() if v is not None}
    security_logger.log(level, f"SECURITY_EVENT {event} {json.dumps(payload, default=str, sort_keys=True)}")
