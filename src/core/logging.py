"""Observability for the board: standard logging captured by Pydantic Logfire.

Modules log through ``logging.getLogger(__name__)`` with snake_case event names
and structured ``extra`` fields; Logfire picks those records up once
``configure_logfire`` has run.

    logger.info("task_shared", extra={"task_id": task_id, "added": added})

Engine operations run inside spans. ``timed_span`` additionally reports calls
crossing the delayed (~1s) and slow (~2s) thresholds:

    with timed_span("collaboration_service.share_task", task_id=task_id):
        ...
"""

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager

import logfire

from src.core.config import settings


_logger = logging.getLogger(__name__)


def configure_logfire() -> None:
    """Configure Logfire for this process; records are only sent when a token is set."""
    logfire.configure(
        token=settings.logfire_token,
        service_name="agile-board",
        service_version="0.1.0",
        environment=settings.environment,
        send_to_logfire="if-token-present",
    )
    _logger.info("logfire_configured", extra={"environment": settings.environment})


def span(name: str, **attributes: object) -> logfire.LogfireSpan:
    """Open a Logfire span named ``<service>.<operation>``."""
    return logfire.span(name, **attributes)


@contextmanager
def timed_span(name: str, **attributes: object) -> Iterator[None]:
    """Span that also logs operations exceeding the delayed/slow thresholds."""
    started = time.perf_counter()
    with logfire.span(name, **attributes):
        try:
            yield
        finally:
            elapsed = time.perf_counter() - started
            if elapsed >= settings.slow_operation_seconds:
                _logger.warning("operation_slow", extra={"operation": name, "elapsed_seconds": elapsed, **attributes})
            elif elapsed >= settings.slow_operation_warn_seconds:
                _logger.info("operation_delayed", extra={"operation": name, "elapsed_seconds": elapsed, **attributes})


def log_with_context(logger: logging.Logger, level: str, event: str, /, **context: object) -> None:
    """Emit ``event`` at ``level`` ("debug" through "critical") with ``context`` as structured fields.

    Fields whose value is None are left out.
    """
    fields = {key: value for key, value in context.items() if value is not None}
    logger.log(logging.getLevelNamesMapping()[level.upper()], event, extra=fields)


def log_with_user_context(
    logger: logging.Logger,
    level: str,
    event: str,
    /,
    user_id: str | None = None,
    **context: object,
) -> None:
    """Same as ``log_with_context`` with the affected user first.

    Usage:
        log_with_user_context(logger, "info", "achievement_unlocked", user_id=uid, achievement_id="first-task")
    """
    log_with_context(logger, level, event, user_id=user_id, **context)
