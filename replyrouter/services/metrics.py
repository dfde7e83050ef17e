"""CloudWatch custom metrics with background batching.

Three services report here:

* ``llm``       one data point per agent completion
* ``redis``     guard and tracker store failures
* ``pipeline``  which layer answered each message (operation = layer key)

Data points are buffered in memory and a daemon thread pushes them to
CloudWatch every ``FLUSH_INTERVAL_SECONDS``.  Unless ``METRICS_ENABLED`` is
``"true"`` nothing leaves the process; points are only logged at DEBUG.

>>> from replyrouter.services.metrics import metrics
>>> metrics.record_success("pipeline", "admin_escalation", latency_ms=0.8)
>>> metrics.record_failure("redis", "rate_limit", error_type="ConnectionError")
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "ReplyRouter"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # PutMetricData limit


def _datum(name: str, dims: dict[str, str], value: float, unit: str) -> dict[str, Any]:
    return {
        "MetricName": name,
        "Dimensions": [{"Name": k, "Value": v} for k, v in dims.items()],
        "Timestamp": datetime.now(UTC),
        "Value": value,
        "Unit": unit,
    }


class MetricsClient:
    """Buffered CloudWatch publisher shared by the whole process."""

    def __init__(self, enabled: bool | None = None) -> None:
        if enabled is None:
            enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._enabled = enabled
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None

        if self._enabled:
            self._start_flush_thread()

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Recording ─────────────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        self._extend(
            _datum("Calls", {"Service": service, "Outcome": "success"}, 1, "Count"),
            _datum("Latency", {"Service": service, "Operation": operation}, latency_ms, "Milliseconds"),
        )
        logger.debug("Metric: %s/%s ok %.1fms", service, operation, latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        points = [
            _datum("Calls", {"Service": service, "Outcome": "failure"}, 1, "Count"),
            _datum("Errors", {"Service": service, "Operation": operation, "ErrorType": error_type}, 1, "Count"),
        ]
        if latency_ms > 0:
            points.append(
                _datum("Latency", {"Service": service, "Operation": operation}, latency_ms, "Milliseconds"),
            )
        self._extend(*points)
        logger.debug("Metric: %s/%s failed (%s)", service, operation, error_type)

    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    # ── Flushing ──────────────────────────────────────────────────────

    def flush(self) -> int:
        """Push buffered points to CloudWatch.  Returns how many were sent."""
        with self._lock:
            batch, self._buffer = self._buffer, []
        if not batch:
            return 0
        if not self._enabled:
            logger.debug("Metrics disabled; dropped %d points", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[i : i + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    def _extend(self, *points: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.extend(points)

    def _start_flush_thread(self) -> None:
        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        threading.Thread(target=_loop, daemon=True, name="metrics-flush").start()
        atexit.register(self.flush)
        logger.info("Metrics flush thread started (every %ds)", FLUSH_INTERVAL_SECONDS)


metrics = MetricsClient()
