"""Structured logging configuration for ConvoRecall."""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from functools import wraps
from typing import Callable, Optional

# Context variable for request tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """JSON-structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(''),
        }

        # Add extra fields
        if hasattr(record, 'duration_ms'):
            log_data['duration_ms'] = record.duration_ms
        if hasattr(record, 'operation'):
            log_data['operation'] = record.operation
        if hasattr(record, 'result_count'):
            log_data['result_count'] = record.result_count

        return json.dumps(log_data)


def setup_logging(level: Optional[str] = None, structured: Optional[bool] = None) -> logging.Handler:
    """
    Attach a stderr handler to the package logger.

    Args:
        level: Log level name, defaults to settings.log_level
        structured: Emit JSON lines instead of plain text, defaults to settings.log_json

    Returns:
        The installed handler (so callers can remove it again)
    """
    from .config import settings

    level = level or settings.log_level
    structured = settings.log_json if structured is None else structured

    handler = logging.StreamHandler(sys.stderr)
    if structured:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

    package_logger = logging.getLogger("convo_recall")
    package_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    package_logger.addHandler(handler)
    return handler


def with_request_id(func: Callable) -> Callable:
    """Decorator to add a request ID and timing to async search operations."""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        request_id = str(uuid.uuid4())[:8]
        token = request_id_var.set(request_id)
        start = time.perf_counter()
        result = None

        try:
            result = await func(*args, **kwargs)
            return result
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            extra = {'duration_ms': round(duration_ms, 2), 'operation': func.__name__}
            if isinstance(result, list):
                extra['result_count'] = len(result)
            logger = logging.getLogger(func.__module__)
            logger.info("Operation completed", extra=extra)
            request_id_var.reset(token)

    return wrapper
