"""
Centralized Logging Configuration

Provides standardized logging setup with JSON formatting for structured logs.
Structured context (agent, app, operation, campaign) is attached either with
`extra=` on a single call or bound once through get_logger(name, **context).
"""
import json
import logging
import os
from datetime import datetime, timezone

CONTEXT_FIELDS = ('agent_id', 'app_id', 'operation', 'campaign_id', 'template_id', 'request_id', 'duration_ms')


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
            'line': record.lineno
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)

        return json.dumps(log_entry, default=str)


class ContextAdapter(logging.LoggerAdapter):
    """Adds bound context fields to every record without overriding per-call extras."""

    def process(self, msg, kwargs):
        extra = kwargs.setdefault('extra', {})
        for key, value in self.extra.items():
            extra.setdefault(key, value)
        return msg, kwargs


def setup_logging(
    level=None,
    format_type='standard',
    log_file=None,
    service_name='partner-messaging'
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
        level = os.getenv('LOG_LEVEL', 'INFO').upper()

    numeric_level = getattr(logging, str(level).upper(), logging.INFO)

    environment = os.getenv('ENVIRONMENT', 'development').lower()
    use_json = (format_type == 'json' or
                environment == 'production' or
                os.getenv('USE_JSON_LOGGING', '').lower() == 'true')

    if use_json:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Noisy third-party libraries; httpx logs full URLs at INFO
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
    logging.getLogger('alembic').setLevel(logging.WARNING)
    logging.getLogger('celery').setLevel(logging.WARNING)

    return logging.getLogger(service_name)


def get_logger(name=None, **context):
    """
    Get a logger with optional context.

    Args:
        name: Logger name (defaults to caller's module)
        **context: Additional context to include in all log messages

    Returns:
        Logger instance with context
    """
    if name is None:
        import inspect
        frame = inspect.currentframe().f_back
        name = frame.f_globals.get('__name__', 'unknown')

    logger = logging.getLogger(name)

    if context:
        return ContextAdapter(logger, context)

    return logger


def setup_test_logging():
    """Setup logging for test environment."""
    return setup_logging(
        level='WARNING',
        format_type='standard',
        service_name='partner-messaging-test'
    )
