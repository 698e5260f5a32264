"""
LogCore: structured JSON logging with secret redaction.
"""

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

REDACTED = '***'

PLAIN_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_secrets = set()
_secrets_lock = threading.Lock()


def register_secret(value: str) -> None:
    """Mask ``value`` in every log record from now on"""
    if value:
        with _secrets_lock:
            _secrets.add(value)


def unregister_secret(value: str) -> None:
    with _secrets_lock:
        _secrets.discard(value)


@contextmanager
def redact_secrets(values: Iterable[str]):
    """
    Register secrets for the duration of a block.

    Example:
        with redact_secrets([password]):
            run_pass()
    """
    values = [v for v in values if v]
    for v in values:
        register_secret(v)
    try:
        yield
    finally:
        for v in values:
            unregister_secret(v)


def redact(value: Any) -> Any:
    """Replace registered secrets in strings, recursing into dicts and lists"""
    if isinstance(value, str):
        with _secrets_lock:
            # Longest first so a secret containing another is masked whole
            secrets = sorted(_secrets, key=len, reverse=True)
        for secret in secrets:
            value = value.replace(secret, REDACTED)
        return value
    if isinstance(value, dict):
        return {k: redact(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(redact(v) for v in value)
    return value


class RedactingFilter(logging.Filter):
    """Handler filter that masks registered secrets before formatting"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact(record.getMessage())
        record.args = ()
        if getattr(record, 'context', None):
            record.context = redact(record.context)
        return True


class JSONFormatter(logging.Formatter):
    """
    Custom formatter that outputs structured JSON logs.

    Output format:
    {
        "timestamp": "2026-02-08T20:30:00.123456Z",
        "level": "INFO",
        "logger": "promtail_provision.installer",
        "message": "Verified promtail-linux-amd64.zip",
        "context": {...}  # Optional extra fields
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON"""
        log_data = {
            'timestamp': datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ'),
            'level': record.levelname,
            'logger': record.name,
            'message': redact(record.getMessage()),
        }

        # logger.info(..., extra={'context': {...}})
        if getattr(record, 'context', None):
            log_data['context'] = redact(record.context)

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': redact(str(record.exc_info[1])),
                'traceback': redact(self.formatException(record.exc_info)),
            }

        if record.levelno <= logging.DEBUG:
            log_data['source'] = {
                'file': record.pathname,
                'line': record.lineno,
                'function': record.funcName
            }

        return json.dumps(log_data, default=str)


def _make_handler(handler: logging.Handler, level: int, use_json: bool) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if use_json else logging.Formatter(PLAIN_FORMAT))
    handler.addFilter(RedactingFilter())
    return handler


def get_logger(
    name: str,
    level: int = logging.INFO,
    log_file: Optional[str] = None,
    use_json: bool = True
) -> logging.Logger:
    """
    Get a pre-configured logger instance.

    Args:
        name: Logger name (typically __name__)
        level: Logging level (default: INFO)
        log_file: Optional file path for file handler
        use_json: Use JSON formatter (default: True)

    Returns:
        Configured logger instance

    Example:
        logger = get_logger(__name__)
        logger.info("Pass finished", extra={'context': {'changed': True}})
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    has_console_handler = any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
                              for h in logger.handlers)
    has_file_handler = any(isinstance(h, logging.FileHandler) and h.baseFilename == log_file
                           for h in logger.handlers) if log_file else False

    if not has_console_handler:
        logger.addHandler(_make_handler(logging.StreamHandler(), level, use_json))

    if log_file and not has_file_handler:
        logger.addHandler(_make_handler(logging.FileHandler(log_file), level, use_json))

    return logger


def setup_logging(
    name: str = 'promtail_provision',
    level: int = logging.INFO,
    log_file: Optional[str] = None,
    use_json: bool = True
) -> logging.Logger:
    """
    Configure the package logger tree for a CLI run.

    Replaces handlers installed by a previous call so repeated invocations
    (e.g. in tests) do not duplicate output.
    """
    logger = logging.getLogger(name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = False
    return get_logger(name, level=level, log_file=log_file, use_json=use_json)


def validate_log_format(log_line: str) -> bool:
    """
    Validate that a log line is properly formatted JSON.

    Args:
        log_line: Log line to validate

    Returns:
        True if valid JSON with required fields, False otherwise
    """
    try:
        data = json.loads(log_line)

        required_fields = ['timestamp', 'level', 'logger', 'message']
        if not all(field in data for field in required_fields):
            return False

        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if data['level'] not in valid_levels:
            return False

        return True

    except (json.JSONDecodeError, TypeError):
        return False
