"""Backend health table and the monitor that keeps it current."""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from backends.base import StorageBackend
from common.logging_config import get_logger
from orchestrator.config import HEALTH_CHECK_INTERVAL, HEALTH_CHECK_TIMEOUT
from orchestrator.observers import StorageObserver
from orchestrator.periodic import PeriodicTask
from orchestrator.utils import utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class BackendHealth:
    name: str
    healthy: bool
    detail: str
    checked_at: Optional[datetime]


class HealthTable:
    """
    Last known health of each backend.

    One writer replaces the whole snapshot; readers get an immutable view
    and never observe a half-applied update. Backends that were never
    checked count as unhealthy.
    """

    def __init__(self, backend_names: Iterable[str] = ()):
        self._snapshot: Mapping[str, BackendHealth] = MappingProxyType({
            name: BackendHealth(name=name, healthy=False, detail="not checked", checked_at=None)
            for name in backend_names
        })

    def snapshot(self) -> Mapping[str, BackendHealth]:
        return self._snapshot

    def is_healthy(self, name: str) -> bool:
        entry = self._snapshot.get(name)
        return entry is not None and entry.healthy

    def healthy_backends(self) -> List[str]:
        return [name for name, entry in self._snapshot.items() if entry.healthy]

    def publish(self, results: Mapping[str, BackendHealth]) -> None:
        merged: Dict[str, BackendHealth] = dict(self._snapshot)
        merged.update(results)
        self._snapshot = MappingProxyType(merged)

    def mark(self, name: str, healthy: bool, detail: str = "") -> None:
        self.publish({name: BackendHealth(name=name, healthy=healthy, detail=detail, checked_at=utcnow())})


class BackendHealthMonitor(PeriodicTask):
    """Probes every backend on an interval and publishes to the health table."""

    name = "backend health monitor"

    def __init__(
        self,
        backends: Mapping[str, StorageBackend],
        health_table: HealthTable,
        interval_seconds: float = HEALTH_CHECK_INTERVAL,
        timeout_seconds: float = HEALTH_CHECK_TIMEOUT,
        observer: Optional[StorageObserver] = None,
    ):
        super().__init__(interval_seconds, run_immediately=True)
        self.backends = backends
        self.health_table = health_table
        self.timeout_seconds = timeout_seconds
        self.observer = observer or StorageObserver()

    async def run_once(self) -> None:
        await self.check_all()

    async def check_all(self) -> Mapping[str, BackendHealth]:
        names = list(self.backends)
        results = await asyncio.gather(*(self._check(name) for name in names))
        previous = self.health_table.snapshot()
        self.health_table.publish(dict(zip(names, results)))

        for entry in results:
            before = previous.get(entry.name)
            if before is None or before.checked_at is None or before.healthy != entry.healthy:
                if entry.healthy:
                    logger.info(f"Backend {entry.name} is healthy")
                else:
                    logger.warning(f"Backend {entry.name} became unhealthy: {entry.detail}")
                self.observer.on_health_changed(entry.name, entry.healthy, entry.detail)
        return self.health_table.snapshot()

    async def _check(self, name: str) -> BackendHealth:
        backend = self.backends[name]
        try:
            status = await asyncio.wait_for(backend.health_check(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            return BackendHealth(name=name, healthy=False, detail="health check timed out", checked_at=utcnow())
        except Exception as e:
            return BackendHealth(name=name, healthy=False, detail=str(e), checked_at=utcnow())
        return BackendHealth(
            name=name,
            healthy=status.healthy,
            detail=status.detail,
            checked_at=status.checked_at or utcnow(),
        )
