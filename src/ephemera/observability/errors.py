"""Error reporting for background components.

The cleaner and the whitelist reconciler run detached from any request, so
their failures cannot be returned to a caller. They are captured here: logged
with full context and counted, so that alerting can pick them up.
"""

from __future__ import annotations

import structlog

from ephemera.observability.metrics import ERRORS_REPORTED

logger = structlog.get_logger()


class ErrorReporter:
    """Collects errors raised inside background loops."""

    def __init__(self, environment: str | None = None):
        self._environment = environment

    def capture(self, error: BaseException, component: str, **context: object) -> None:
        """Record an error without interrupting the caller.

        Args:
            error: The exception to record
            component: Name of the reporting component (e.g. "cleaner")
            **context: Extra key/value pairs attached to the log event
        """
        ERRORS_REPORTED.labels(component=component).inc()
        logger.error(
            "Error captured",
            component=component,
            error=str(error),
            error_type=type(error).__name__,
            environment=self._environment,
            exc_info=error,
            **context,
        )
