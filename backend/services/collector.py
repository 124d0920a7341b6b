# services/collector.py
# ============================================================================
# SHIPROCKET → TRIPLE WHALE BRIDGE — METRICS COLLECTOR
# ============================================================================
# Process counters and gauges, owned by the application lifespan and injected
# wherever events are processed. Served by GET /metrics.
# ============================================================================

import threading
import time
from datetime import datetime
from typing import Any, Dict, Optional


class MetricsCollector:
    """Lock-guarded counters for webhook and sync activity."""

    def __init__(self):
        self._lock = threading.Lock()
        self._started = time.monotonic()
        self._started_at = datetime.utcnow()

        self.events_processed = 0
        self.events_rejected = 0
        self.events_failed = 0
        self.metrics_synced = 0
        self.syncs_completed = 0
        self.errors = 0
        self.last_sync_time: Optional[datetime] = None
        self.last_error: Optional[str] = None

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self._started

    def record_processed(self, metrics_sent: int = 0) -> None:
        with self._lock:
            self.events_processed += 1
            if metrics_sent:
                self.metrics_synced += metrics_sent
                self.last_sync_time = datetime.utcnow()

    def record_rejected(self) -> None:
        with self._lock:
            self.events_rejected += 1

    def record_failed(self, error: Optional[str] = None) -> None:
        with self._lock:
            self.events_failed += 1
            self.errors += 1
            self.last_error = error

    def record_sync(self, metrics_sent: int) -> None:
        with self._lock:
            self.syncs_completed += 1
            self.metrics_synced += metrics_sent
            self.last_sync_time = datetime.utcnow()

    def record_error(self, error: Optional[str] = None) -> None:
        with self._lock:
            self.errors += 1
            self.last_error = error

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "started_at": self._started_at.isoformat(),
                "uptime_seconds": round(self.uptime_seconds, 3),
                "events_processed": self.events_processed,
                "events_rejected": self.events_rejected,
                "events_failed": self.events_failed,
                "metrics_synced": self.metrics_synced,
                "syncs_completed": self.syncs_completed,
                "errors": self.errors,
                "last_error": self.last_error,
                "last_sync_time": self.last_sync_time.isoformat() if self.last_sync_time else None,
            }


__all__ = ["MetricsCollector"]
