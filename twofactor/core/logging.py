"""
Logging setup.

Application modules log through the standard library. In production those
records are rendered as JSON by structlog's ProcessorFormatter, with the
request ID bound by the middleware merged in from contextvars. In development
they are printed as plain text. Both paths redact otpauth URIs, and the JSON
path also drops secrets, codes and tokens passed as structured fields.
"""
import logging
import re
import sys
from typing import Any

from twofactor.core.config import settings

REDACTED = "***REDACTED***"

# Keys whose values are never written to the logs
SENSITIVE_FIELDS = (
    "password",
    "token",
    "secret",
    "code",
    "backup",
    "authorization",
    "cookie",
    "otpauth",
)

# Correlation and envelope fields rendered verbatim
PASSTHROUGH_FIELDS = frozenset({"request_id", "timestamp", "logger", "level"})

NOISY_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "aiosqlite")

_OTPAUTH_PATTERN = re.compile(r"otpauth://\S+")


class RedactingFilter(logging.Filter):
    """Scrub otpauth URIs (they embed the shared secret) from log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str) and "otpauth://" in record.msg:
            record.msg = redact_otpauth(record.msg)
        return True


def setup_logging() -> None:
    """
    Install a single stdout handler on the root logger.

    DEBUG selects the readable formatter; otherwise records are JSON.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RedactingFilter())
    handler.setFormatter(build_text_formatter() if settings.DEBUG else build_json_formatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def build_text_formatter() -> logging.Formatter:
    return logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_json_formatter() -> logging.Formatter:
    """JSON formatter backed by structlog, or python-json-logger if structlog is missing."""
    try:
        import structlog
    except ImportError:
        from pythonjsonlogger import jsonlogger

        return jsonlogger.JsonFormatter(
            "%(asctime)s %(name)s %(levelname)s %(message)s",
            timestamp=True,
        )

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            redact_sensitive_data,
            structlog.processors.JSONRenderer(),
        ],
    )


def redact_sensitive_data(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """
    Structlog processor that masks sensitive fields.

    The event message itself only has otpauth URIs removed; other string
    fields are also checked for emails and long tokens.
    """
    redacted = event_dict.copy()

    for key, value in redacted.items():
        if not isinstance(key, str) or key in PASSTHROUGH_FIELDS:
            continue
        if any(sensitive in key.lower() for sensitive in SENSITIVE_FIELDS):
            redacted[key] = REDACTED
        elif key == "event" and isinstance(value, str):
            redacted[key] = redact_otpauth(value)
        elif isinstance(value, str):
            redacted[key] = redact_string(value)

    return redacted


def redact_otpauth(value: str) -> str:
    return _OTPAUTH_PATTERN.sub(f"otpauth://{REDACTED}", value)


def redact_string(value: str) -> str:
    """
    Mask a single field value.

    Patterns:
    - otpauth:// URIs
    - Email addresses
    - Long alphanumeric strings (secrets, hashes, tokens)
    """
    if "otpauth://" in value:
        return redact_otpauth(value)

    if "@" in value and "." in value.split("@")[-1]:
        local, _, domain = value.partition("@")
        if local and "@" not in domain:
            return f"{local[0]}***@{domain}"

    if len(value) > 20 and value.replace("_", "").replace("-", "").isalnum():
        return f"{value[:8]}...{value[-4:]}"

    return value
