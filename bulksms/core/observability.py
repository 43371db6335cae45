import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar


_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


@contextmanager
def correlation_context(correlation_id: str | None = None):
    """Context manager to temporarily set a correlation id."""

    token = _correlation_id.set(correlation_id or f"corr-{uuid.uuid4().hex[:12]}")
    try:
        yield _correlation_id.get()
    finally:
        _correlation_id.reset(token)


class CorrelationIdFilter(logging.Filter):
    """Expose the active correlation id to log formatters."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _correlation_id.get() or "-"
        return True
