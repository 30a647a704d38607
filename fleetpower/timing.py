"""Timing helper for controller operations.

Records duration to a Prometheus histogram and emits a structured log line.
Instrumentation failures never break the wrapped operation.

Usage:
    from fleetpower.timing import AsyncTimedOperation
    from fleetpower.metrics import actuation_duration

    async with AsyncTimedOperation(
        histogram=actuation_duration,
        labels={"action": "wake", "backend": "physical", "status": "auto"},
        log_event="actuation",
        log_extras={"node_id": node.id},
    ) as timed:
        ok = await do_work()
        timed.success = ok
"""
from __future__ import annotations

import logging
import time


class AsyncTimedOperation:
    """Async context manager for timing operations.

    A ``status`` label of ``"auto"`` is replaced by ``success``/``error``.
    Success defaults to "no exception escaped"; the caller may override it
    by assigning ``success`` inside the block, for operations that report
    failure by return value.
    """

    def __init__(
        self,
        *,
        histogram=None,
        labels: dict[str, str] | None = None,
        log_event: str = "timed_operation",
        log_extras: dict | None = None,
        log_level: int = logging.INFO,
        logger: logging.Logger | None = None,
    ):
        self.histogram = histogram
        self.labels = labels or {}
        self.log_event = log_event
        self.log_extras = log_extras or {}
        self.log_level = log_level
        self.logger = logger or logging.getLogger(__name__)
        self.duration_ms: int = 0
        self.success: bool = True
        self._start: float = 0.0

    async def __aenter__(self):
        self._start = time.monotonic()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        elapsed = time.monotonic() - self._start
        self.duration_ms = int(elapsed * 1000)
        if exc_type is not None:
            self.success = False

        try:
            if self.histogram is not None:
                metric_labels = dict(self.labels)
                if metric_labels.get("status") in ("auto", "__auto__"):
                    metric_labels["status"] = "success" if self.success else "error"
                self.histogram.labels(**metric_labels).observe(elapsed)
        except Exception as e:
            self.logger.warning("Failed to record metric: %s", e)

        try:
            extra = {
                "event": self.log_event,
                "duration_ms": self.duration_ms,
                "success": self.success,
                **{k: v for k, v in self.labels.items() if k != "status"},
                **self.log_extras,
            }
            if exc_type is not None:
                extra["error"] = str(exc_val)
            self.logger.log(self.log_level, "%s completed", self.log_event, extra=extra)
        except Exception:
            pass

        return False
