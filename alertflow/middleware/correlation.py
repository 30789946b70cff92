# alertflow/middleware/correlation.py
"""
Correlation ID Middleware
Every request and every task-processing log line carries a traceable id.
"""

import uuid
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Context variable for correlation ID (per thread / per request)
correlation_id_var: ContextVar[str] = ContextVar('correlation_id', default='no-corr-id')


def get_correlation_id() -> str:
    """Get current correlation ID from context"""
    return correlation_id_var.get()


def generate_correlation_id() -> str:
    """Generate a new correlation ID"""
    return f"corr-{uuid.uuid4().hex[:12]}"


@contextmanager
def task_context(task_id: str):
    """Bind log records emitted inside the block to a task id"""
    token = correlation_id_var.set(f"task-{task_id}")
    try:
        yield
    finally:
        correlation_id_var.reset(token)


class CorrelationIdFilter(logging.Filter):
    """Logging filter to inject correlation ID into log records"""

    def filter(self, record):
        record.correlation_id = get_correlation_id()
        record.iso_timestamp = datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%S.%f")
        return True


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Middleware that ensures every request has a correlation ID."""

    HEADER_NAME = "X-Correlation-ID"

    async def dispatch(self, request: Request, call_next) -> Response:
        corr_id = request.headers.get(self.HEADER_NAME)
        if not corr_id:
            corr_id = generate_correlation_id()

        token = correlation_id_var.set(corr_id)

        try:
            response = await call_next(request)
            response.headers[self.HEADER_NAME] = corr_id
            return response
        finally:
            correlation_id_var.reset(token)
