"""
logcore: Standardized JSON logging library

Structured JSON logging with secret redaction, used by promtail-provision
for both console and file output.
"""

from logcore.logger import (
    JSONFormatter,
    RedactingFilter,
    get_logger,
    redact,
    redact_secrets,
    setup_logging,
    validate_log_format,
)

__all__ = [
    'JSONFormatter',
    'RedactingFilter',
    'get_logger',
    'redact',
    'redact_secrets',
    'setup_logging',
    'validate_log_format',
]
__version__ = '1.1.0'
