"""Two-factor metrics helpers for Prometheus integration.

Usage:
    ```python
    from cqrs_ddd_twofactor.metrics import TwoFactorMetrics

    with TwoFactorMetrics.operation("verify", method="totp") as outcome:
        result = await engine.verify(identity, code)
        if result is not OtpStatus.VERIFIED:
            outcome.result = result.value

    TwoFactorMetrics.record_event(event)
    ```
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

_logger = logging.getLogger("cqrs_ddd.twofactor.metrics")

if TYPE_CHECKING:
    from collections.abc import Generator

    from .audit import TwoFactorAuditEvent


class _TwoFactorMetricsRegistry:
    """Registry for two-factor Prometheus metrics.

    Lazily initializes Prometheus metrics on first use.
    """

    def __init__(self) -> None:
        self._histogram: Any = None
        self._counter: Any = None
        self._initialized = False

    def _ensure_initialized(self) -> None:
        """Initialize Prometheus metrics if available."""
        if self._initialized:
            return

        try:
            from prometheus_client import Counter, Histogram

            self._histogram = Histogram(
                "twofactor_operation_duration_seconds",
                "Two-factor operation duration",
                ["method", "operation"],
            )
            self._counter = Counter(
                "twofactor_operations_total",
                "Two-factor operation count",
                ["method", "operation", "result"],
            )
        except ImportError:
            _logger.debug("prometheus_client not available, metrics disabled")

        self._initialized = True

    @property
    def histogram(self) -> Any:
        self._ensure_initialized()
        return self._histogram

    @property
    def counter(self) -> Any:
        self._ensure_initialized()
        return self._counter


# Global registry instance
_registry = _TwoFactorMetricsRegistry()


class OperationOutcome:
    """Result label of an in-flight operation.

    Starts as ``success``. An exception turns it into ``error``; callers set
    it to a status value (``failed``, ``rate_limited``, ...) when an operation
    returns normally without succeeding.
    """

    def __init__(self) -> None:
        self.result = "success"


class TwoFactorMetrics:
    """Context managers and helpers for recording two-factor metrics.

    Integrates with Prometheus when available and is a no-op otherwise.
    """

    @staticmethod
    @contextmanager
    def operation(
        operation: str, *, method: str = "unknown"
    ) -> Generator[OperationOutcome, None, None]:
        """Time an operation and count it by result.

        Args:
            operation: Operation name (setup, confirm, challenge, verify).
            method: Method involved.

        Yields:
            The outcome whose ``result`` becomes the counter label.
        """
        outcome = OperationOutcome()
        start = time.monotonic()

        try:
            yield outcome
        except Exception:
            outcome.result = "error"
            raise
        finally:
            duration = time.monotonic() - start

            if _registry.histogram:
                try:
                    _registry.histogram.labels(
                        method=method, operation=operation
                    ).observe(duration)
                except Exception:
                    _logger.debug("Failed to record histogram")

            if _registry.counter:
                try:
                    _registry.counter.labels(
                        method=method, operation=operation, result=outcome.result
                    ).inc()
                except Exception:
                    _logger.debug("Failed to record counter")

    @staticmethod
    def record_event(event: TwoFactorAuditEvent) -> None:
        """Count an audit event.

        Args:
            event: The audit event to record.
        """
        if not _registry.counter:
            return

        try:
            _registry.counter.labels(
                method=event.method or "unknown",
                operation=event.event_type.value,
                result="success" if event.success else "failure",
            ).inc()
        except Exception:
            _logger.debug("Failed to record audit event metric")


__all__: list[str] = ["OperationOutcome", "TwoFactorMetrics"]
