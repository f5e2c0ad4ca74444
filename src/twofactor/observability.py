"""Two-factor metrics for Prometheus.

Usage:
    ```python
    from twofactor.observability import TwoFactorMetrics

    with TwoFactorMetrics.operation("verify_login", method="EMAIL"):
        ...

    TwoFactorMetrics.record_event(audit_event)
    ```

Metrics are created lazily on first use and become no-ops when
``prometheus_client`` cannot be imported.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from .exceptions import TwoFactorError

_logger = logging.getLogger("twofactor.observability")

if TYPE_CHECKING:
    from collections.abc import Generator

    from .audit import TwoFactorAuditEvent


class _TwoFactorMetricsRegistry:
    """Lazily created Prometheus collectors."""

    def __init__(self) -> None:
        self._histogram: Any = None
        self._counter: Any = None
        self._lockouts: Any = None
        self._initialized = False

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return

        try:
            from prometheus_client import Counter, Histogram

            self._histogram = Histogram(
                "twofactor_operation_duration_seconds",
                "Two-factor operation duration",
                ["operation", "method"],
            )
            self._counter = Counter(
                "twofactor_operations_total",
                "Two-factor operation count",
                ["operation", "method", "result"],
            )
            self._lockouts = Counter(
                "twofactor_lockouts_total",
                "Accounts locked after repeated failed codes",
                ["method"],
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

    @property
    def lockouts(self) -> Any:
        self._ensure_initialized()
        return self._lockouts


_registry = _TwoFactorMetricsRegistry()


class TwoFactorMetrics:
    """Recording helpers; safe to call whether or not Prometheus is present."""

    @staticmethod
    @contextmanager
    def operation(
        operation: str, *, method: str | None = None
    ) -> Generator[None, None, None]:
        """Time an orchestrator operation and count its outcome.

        The result label is ``success``, ``failure`` for two-factor errors
        (wrong code, policy refusal) or ``error`` for anything else.
        """
        method_label = method or "none"
        result = "success"
        start = time.monotonic()

        try:
            yield
        except TwoFactorError:
            result = "failure"
            raise
        except Exception:
            result = "error"
            raise
        finally:
            duration = time.monotonic() - start

            if _registry.histogram:
                try:
                    _registry.histogram.labels(
                        operation=operation, method=method_label
                    ).observe(duration)
                except Exception:
                    _logger.debug("Failed to record histogram")

            if _registry.counter:
                try:
                    _registry.counter.labels(
                        operation=operation, method=method_label, result=result
                    ).inc()
                except Exception:
                    _logger.debug("Failed to record counter")

    @staticmethod
    def record_event(event: TwoFactorAuditEvent) -> None:
        """Count an audit event."""
        if not _registry.counter:
            return

        try:
            _registry.counter.labels(
                operation=event.event_type.value,
                method=event.method or "none",
                result="success" if event.success else "failure",
            ).inc()
        except Exception:
            _logger.debug("Failed to record audit event metric")

    @staticmethod
    def record_lockout(method: str | None = None) -> None:
        if _registry.lockouts:
            try:
                _registry.lockouts.labels(method=method or "none").inc()
            except Exception:
                _logger.debug("Failed to record lockout")


__all__: list[str] = ["TwoFactorMetrics"]
