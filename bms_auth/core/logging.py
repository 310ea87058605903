"""Ultra BMS Auth Logging Configuration.

Security events (logins, lockouts, revocations, timeouts, evictions) carry
their identifiers through ``extra=`` so they can be searched as fields.
Raw tokens must never reach a log line; ``TokenRedactionFilter`` masks
anything shaped like a JWT or a bearer header as a last line of protection.
"""

import json
import logging
import re
import sys
from typing import Literal

DEV_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Record attributes promoted to top-level keys in structured output
CONTEXT_FIELDS = ("user_id", "session_id", "client_ip", "reason")

# Three base64url segments, the first starting like a JSON header
_JWT_PATTERN = re.compile(r"eyJ[\w-]*\.[\w-]+\.[\w-]+")
_BEARER_PATTERN = re.compile(r"(Bearer\s+)\S+", re.IGNORECASE)
REDACTED = "[REDACTED]"

# Third-party loggers that are only interesting when something is wrong
QUIET_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "httpx")


def redact_tokens(text: str) -> str:
    """Mask JWTs and bearer credentials in a string."""
    text = _BEARER_PATTERN.sub(rf"\g<1>{REDACTED}", text)
    return _JWT_PATTERN.sub(REDACTED, text)


class TokenRedactionFilter(logging.Filter):
    """Rewrite records so token strings never leave the process."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_tokens(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line; json.dumps does all escaping."""

    def __init__(self):
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = redact_tokens(self.formatException(record.exc_info))
        return json.dumps(entry, default=str)


def setup_logging(
    level: str = "INFO",
    format_type: Literal["structured", "dev"] = "dev",
) -> None:
    """
    Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: 'structured' for JSON lines, 'dev' for readable output
    """
    numeric_level = getattr(logging, level.upper())

    handler = logging.StreamHandler(sys.stdout)
    if format_type == "structured":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(DEV_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    handler.addFilter(TokenRedactionFilter())

    logging.root.handlers = [handler]
    logging.root.setLevel(numeric_level)

    for logger_name in QUIET_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    # SQL echo only when debugging; statements can include token hashes
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if numeric_level == logging.DEBUG else logging.WARNING
    )

    get_logger("logging").info(f"Logging configured: level={level}, format={format_type}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the bms_auth namespace."""
    return logging.getLogger(f"bms_auth.{name}")
