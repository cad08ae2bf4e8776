"""
Centralized Logging Configuration

JSON logs in production, readable lines elsewhere. Every handler carries a
SecretRedactingFilter so OAuth tokens, client secrets and stored ciphertext
never reach log output, whatever a caller interpolates into the message.
"""
import json
import logging
import re
from datetime import datetime, timezone

from reviewflow.core.config import get_settings

REDACTED = "***REDACTED***"

# Attributes attached through `extra=` that end up in JSON output
CONTEXT_FIELDS = ("business_id", "review_id", "user_id", "request_id", "error_kind", "duration_ms")

SECRET_PATTERNS = [
    re.compile(r"Bearer\s+[A-Za-z0-9._~+/=-]+", re.IGNORECASE),
    # Google OAuth access and refresh tokens
    re.compile(r"ya29\.[A-Za-z0-9._-]+"),
    re.compile(r"1//[A-Za-z0-9._-]{10,}"),
    re.compile(r"GOCSPX-[A-Za-z0-9_-]+"),
    # Stored field ciphertext, current and legacy formats
    re.compile(r"enc:v\d+:[^:\s]+:[A-Za-z0-9_=-]+"),
    re.compile(r"\b[0-9a-fA-F]{24}:[0-9a-fA-F]{32}:[0-9a-fA-F]+\b"),
]

_NOISY_LOGGERS = ("urllib3", "requests_oauthlib", "oauthlib", "sqlalchemy.engine", "httpx")


def redact(text: str) -> str:
    for pattern in SECRET_PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text


class SecretRedactingFilter(logging.Filter):
    """Scrub token-like values out of the rendered message and its args"""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        scrubbed = redact(message)
        if scrubbed != message:
            record.msg = scrubbed
            record.args = None
        return True


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }
        if record.exc_info:
            log_entry['exception'] = redact(self.formatException(record.exc_info))

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        return json.dumps(log_entry, default=str)


def _build_handler(handler: logging.Handler, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(SecretRedactingFilter())
    return handler


def setup_logging(level=None, format_type=None, log_file=None, service_name='reviewflow'):
    """
    Configure the root logger once at startup.

    Args:
        level: Log level name; defaults to settings.log_level
        format_type: 'json' or 'standard'; defaults to json in production or
            when USE_JSON_LOGGING is set
        log_file: Optional extra file destination
        service_name: Name of the logger returned to the caller
    """
    settings = get_settings()
    numeric_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)

    if format_type is None:
        format_type = 'json' if settings.is_production or settings.use_json_logging else 'standard'
    if format_type == 'json':
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter('[%(asctime)s] %(levelname)s %(name)s: %(message)s', datefmt='%Y-%m-%d %H:%M:%S')

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()
    root_logger.addHandler(_build_handler(logging.StreamHandler(), numeric_level, formatter))
    if log_file:
        root_logger.addHandler(_build_handler(logging.FileHandler(log_file), numeric_level, formatter))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logging.getLogger(service_name)


def setup_test_logging():
    """Setup logging for test environment."""
    return setup_logging(level='WARNING', format_type='standard', service_name='reviewflow-test')
