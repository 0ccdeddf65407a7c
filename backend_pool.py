import asyncio
import logging
import time
from collections import deque
from balancer import (
    BackendDescriptor,
    MetricsCollector,
    Registry,
    RoundRobinSelector,
)

logger = logging.getLogger(__name__)


class BackendPool:
    """Registry and round-robin selector behind one lock.

    Health flags are only changed through ``set_healthy``; there is no
    built-in health checker. Selection and health updates are serialized, so every
    caller observes the registry and the cursor in a state some sequence of
    whole operations produced.

    The lock is an asyncio lock: call the pool from its own event loop, or
    from another thread via ``asyncio.run_coroutine_threadsafe``.
    """

    def __init__(self, metrics: MetricsCollector | None = None) -> None:
        self.registry = Registry()
        self.selector = RoundRobinSelector()
        self._lock = asyncio.Lock()
        self._selection_times: dict[BackendDescriptor, deque[float]] = {}
        self._total_selections: dict[BackendDescriptor, int] = {}
        self._period_map = {
            "5m": 300,
            "30m": 1800,
            "1h": 3600,
            "6h": 21600,
            "24h": 86400,
        }
        self.metrics = metrics

    async def register(self, host: str, port: int) -> BackendDescriptor:
        backend = BackendDescriptor(host, port)
        async with self._lock:
            self.registry.register(backend)
            self._selection_times[backend] = deque()
            self._total_selections[backend] = 0
            await self._publish_health(backend, True)
        logger.info(f"Backend registered: {backend.address}")
        return backend

    async def set_healthy(self, host: str, port: int, healthy: bool):
        backend = BackendDescriptor(host, port)
        async with self._lock:
            self.registry.set_healthy(backend, healthy)
            await self._publish_health(backend, healthy)
        logger.info(
            f"Backend {backend.address} marked {'healthy' if healthy else 'unhealthy'}"
        )

    async def is_healthy(self, host: str, port: int) -> bool:
        async with self._lock:
            return self.registry.is_healthy(BackendDescriptor(host, port))

    async def next_healthy(self) -> BackendDescriptor | None:
        async with self._lock:
            backend = self.selector.next_healthy(self.registry)
            if backend is None:
                if self.metrics:
                    await self.metrics.increment_counter("selector.no_healthy")
                logger.warning("No healthy backend available")
                return None
            self._record_selection(backend)
            if self.metrics:
                await self.metrics.increment_counter(
                    "selector.selections", {"backend": backend.address}
                )
            logger.debug(f"Selected backend {backend.address}")
            return backend

    async def _publish_health(self, backend: BackendDescriptor, healthy: bool):
        if not self.metrics:
            return
        await self.metrics.set_gauge(
            "backend.healthy", 1 if healthy else 0, {"backend": backend.address}
        )

    def _record_selection(self, backend: BackendDescriptor):
        now = time.time()
        cutoff = now - self._period_map["24h"]
        timestamps = self._selection_times[backend]
        # selections older than the widest period are never reported
        while timestamps and timestamps[0] < cutoff:
            timestamps.popleft()
        timestamps.append(now)
        self._total_selections[backend] += 1

    def _parse_period(self, period: str) -> int | None:
        return self._period_map.get(period)

    async def get_stats(self, periods: list[str]) -> dict:
        async with self._lock:
            now = time.time()
            result = {}

            for period in periods:
                if period == "all":
                    counts = {
                        b.address: n for b, n in self._total_selections.items()
                    }
                else:
                    seconds = self._parse_period(period)
                    if seconds is None:
                        continue
                    cutoff = now - seconds
                    counts = {
                        b.address: sum(1 for ts in timestamps if ts >= cutoff)
                        for b, timestamps in self._selection_times.items()
                    }

                total = sum(counts.values())
                backends = {}
                for address, count in counts.items():
                    if count == 0 and period != "all":
                        continue
                    percentage = (count / total * 100) if total > 0 else 0
                    backends[address] = {
                        "count": count,
                        "percentage": round(percentage, 1),
                    }
                result[period] = {"total": total, "backends": backends}

            return result

    async def backends(self) -> list[BackendDescriptor]:
        async with self._lock:
            return list(self.registry)

    async def show(self):
        async with self._lock:
            return {
                b.address: {
                    "host": b.host,
                    "port": b.port,
                    "healthy": self.registry.is_healthy(b),
                    "selections": self._total_selections.get(b, 0),
                }
                for b in self.registry
            }
