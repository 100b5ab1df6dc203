"""
Centralized Logging Configuration

Provides standardized logging setup with JSON formatting for structured logs.
Records are tagged with the tenant of the execution that emitted them.
"""
import os
import logging
import json
from datetime import datetime, timezone

from insurecrm.core.tenant_context import current


class TenantContextFilter(logging.Filter):
    """Attach tenant_id and caller_id from the active tenant context."""

    def filter(self, record):
        context = current()
        if not hasattr(record, 'tenant_id'):
            record.tenant_id = context.tenant_id if context else None
        if not hasattr(record, 'caller_id'):
            record.caller_id = context.caller_id if context else None
        return True


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record):
        """Format log record as JSON."""
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'tenant_id': getattr(record, 'tenant_id', None),
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        for field in ('caller_id', 'request_id', 'duration_ms'):
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        return json.dumps(log_entry, default=str)


def setup_logging(
    level=None,
    format_type='standard',
    log_file=None,
    service_name='insurecrm'
):
    """
    Setup centralized logging configuration.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: 'json' for structured JSON logs, 'standard' for human-readable
        log_file: Optional file path for log output
        service_name: Service name to include in logs
    """
    if level is None:
        level = os.getenv('LOG_LEVEL', 'INFO')
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)

    environment = os.getenv('ENVIRONMENT', 'development').lower()
    use_json = (format_type == 'json' or
                environment == 'production' or
                os.getenv('USE_JSON_LOGGING', '').lower() == 'true')

    if use_json:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s %(name)s [tenant=%(tenant_id)s]: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    context_filter = TenantContextFilter()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(context_filter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(context_filter)
        root_logger.addHandler(file_handler)

    # Noisy third-party loggers
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('openai').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)

    return logging.getLogger(service_name)


def setup_worker_logging():
    """Setup logging for Celery workers."""
    return setup_logging(format_type='json', service_name='insurecrm-worker')
