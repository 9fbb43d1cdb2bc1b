"""Per-backend transfer metrics collected from observer hooks."""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, Optional

from common.logging_config import get_logger
from orchestrator.observers import StorageObserver
from orchestrator.periodic import PeriodicTask
from orchestrator.utils import utcnow

logger = get_logger(__name__)

RECENT_SAMPLES = 100


@dataclass
class TransferCounters:
    count: int = 0
    bytes: int = 0
    total_ms: float = 0.0
    errors: int = 0

    def summary(self) -> Dict[str, Any]:
        attempts = self.count + self.errors
        seconds = self.total_ms / 1000
        return {
            "count": self.count,
            "bytes": self.bytes,
            "errors": self.errors,
            "success_rate": round(self.count / attempts, 4) if attempts else None,
            "average_ms": round(self.total_ms / self.count, 3) if self.count else None,
            "throughput_bps": round(self.bytes / seconds, 1) if seconds > 0 else None,
        }


@dataclass
class BackendMetrics:
    uploads: TransferCounters = field(default_factory=TransferCounters)
    downloads: TransferCounters = field(default_factory=TransferCounters)
    recent_ms: Deque[float] = field(default_factory=lambda: deque(maxlen=RECENT_SAMPLES))
    last_activity: Optional[datetime] = None


class BackendMetricsCollector(StorageObserver):
    """
    Counts successful and failed transfers per backend.

    Hooks may fire from worker threads, so every update and snapshot holds
    the collector lock. Response times of the last RECENT_SAMPLES successful
    transfers are kept for the recent average.
    """

    def __init__(self):
        self._backends: Dict[str, BackendMetrics] = {}
        self._lock = threading.Lock()

    def _entry(self, backend_name: str) -> BackendMetrics:
        entry = self._backends.get(backend_name)
        if entry is None:
            entry = self._backends[backend_name] = BackendMetrics()
        entry.last_activity = utcnow()
        return entry

    def on_placement_stored(self, backend_name, key, size_bytes, elapsed_ms):
        with self._lock:
            entry = self._entry(backend_name)
            entry.uploads.count += 1
            entry.uploads.bytes += size_bytes
            entry.uploads.total_ms += elapsed_ms
            entry.recent_ms.append(elapsed_ms)

    def on_placement_failed(self, backend_name, key, error):
        with self._lock:
            self._entry(backend_name).uploads.errors += 1

    def on_backup_failed(self, backend_name, key, error):
        with self._lock:
            self._entry(backend_name).uploads.errors += 1

    def on_download_attempt(self, backend_name, file_id, size_bytes, elapsed_ms, error):
        with self._lock:
            entry = self._entry(backend_name)
            if error is not None:
                entry.downloads.errors += 1
                return
            entry.downloads.count += 1
            entry.downloads.bytes += size_bytes
            entry.downloads.total_ms += elapsed_ms
            entry.recent_ms.append(elapsed_ms)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                name: {
                    "uploads": entry.uploads.summary(),
                    "downloads": entry.downloads.summary(),
                    "recent_average_ms": (
                        round(sum(entry.recent_ms) / len(entry.recent_ms), 3) if entry.recent_ms else None
                    ),
                    "last_activity": entry.last_activity.isoformat() if entry.last_activity else None,
                }
                for name, entry in sorted(self._backends.items())
            }

    def reset(self) -> None:
        with self._lock:
            self._backends.clear()


class MetricsRollup(PeriodicTask):
    """Logs a one-line summary per backend on an interval."""

    name = "metrics rollup"

    def __init__(self, collector: BackendMetricsCollector, interval_seconds: float = 300):
        super().__init__(interval_seconds)
        self.collector = collector

    async def run_once(self) -> Dict[str, Dict[str, Any]]:
        snapshot = self.collector.snapshot()
        for name, stats in snapshot.items():
            uploads, downloads = stats["uploads"], stats["downloads"]
            logger.info(
                f"Backend metrics [backend={name}] "
                f"[uploads={uploads['count']}] [upload_errors={uploads['errors']}] "
                f"[downloads={downloads['count']}] [download_errors={downloads['errors']}] "
                f"[recent_average_ms={stats['recent_average_ms']}]"
            )
        return snapshot
