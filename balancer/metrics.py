import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

METRIC_PREFIX = "rrlb"


@dataclass
class Counter:
    value: int = 0

    def add(self, value: int = 1):
        self.value += value


@dataclass
class Histogram:
    values: list[float] = field(default_factory=list)
    _sum: float = 0.0

    def record(self, value: float):
        self.values.append(value)
        self._sum += value

    @property
    def sum(self) -> float:
        return self._sum

    @property
    def count(self) -> int:
        return len(self.values)

    def percentiles(self, *percentiles: float) -> dict[str, float]:
        if not self.values:
            return {f"p{int(p)}": 0.0 for p in percentiles}
        sorted_values = sorted(self.values)
        result = {}
        for p in percentiles:
            idx = int(len(sorted_values) * p / 100)
            result[f"p{int(p)}"] = sorted_values[min(idx, len(sorted_values) - 1)]
        return result


@dataclass
class Gauge:
    value: float = 0.0

    def set(self, value: float):
        self.value = value

    def inc(self, value: float = 1.0):
        self.value += value


def _labels_key(labels: dict[str, str] | None) -> tuple:
    return tuple(sorted((labels or {}).items()))


def _labels_str(key: tuple) -> str:
    return ",".join(f'{k}="{v}"' for k, v in key)


def _metric_name(name: str) -> str:
    return f"{METRIC_PREFIX}_{name.replace('.', '_')}"


class MetricsCollector:
    """In-process metrics shared by the pool, the listeners and the handlers."""

    def __init__(self) -> None:
        self._counters: dict[str, dict[tuple, Counter]] = defaultdict(
            lambda: defaultdict(Counter)
        )
        self._histograms: dict[str, dict[tuple, Histogram]] = defaultdict(
            lambda: defaultdict(Histogram)
        )
        self._gauges: dict[str, dict[tuple, Gauge]] = defaultdict(
            lambda: defaultdict(Gauge)
        )
        self._lock = asyncio.Lock()

    async def increment_counter(
        self, name: str, labels: dict[str, str] | None = None, value: int = 1
    ):
        async with self._lock:
            self._counters[name][_labels_key(labels)].add(value)

    async def record_histogram(
        self, name: str, value: float, labels: dict[str, str] | None = None
    ):
        async with self._lock:
            self._histograms[name][_labels_key(labels)].record(value)

    async def set_gauge(
        self, name: str, value: float, labels: dict[str, str] | None = None
    ):
        async with self._lock:
            self._gauges[name][_labels_key(labels)].set(value)

    async def inc_gauge(
        self, name: str, value: float = 1.0, labels: dict[str, str] | None = None
    ):
        async with self._lock:
            self._gauges[name][_labels_key(labels)].inc(value)

    async def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        async with self._lock:
            by_labels = self._counters.get(name, {})
            counter = by_labels.get(_labels_key(labels))
            return counter.value if counter else 0

    async def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float:
        async with self._lock:
            by_labels = self._gauges.get(name, {})
            gauge = by_labels.get(_labels_key(labels))
            return gauge.value if gauge else 0.0

    async def get_metrics(self) -> dict[str, Any]:
        # label sets are rendered as prometheus-style strings so the result is
        # json serializable
        async with self._lock:
            result: dict[str, Any] = {"counters": {}, "histograms": {}, "gauges": {}}

            for name, by_labels in self._counters.items():
                result["counters"][name] = {
                    _labels_str(key): counter.value
                    for key, counter in by_labels.items()
                }

            for name, by_labels in self._histograms.items():
                result["histograms"][name] = {
                    _labels_str(key): {
                        "count": hist.count,
                        "sum": round(hist.sum, 3),
                        "min": min(hist.values) if hist.values else 0,
                        "max": max(hist.values) if hist.values else 0,
                        **hist.percentiles(50, 90, 95, 99),
                    }
                    for key, hist in by_labels.items()
                }

            for name, by_labels in self._gauges.items():
                result["gauges"][name] = {
                    _labels_str(key): gauge.value for key, gauge in by_labels.items()
                }

            return result

    async def export_prometheus(self) -> str:
        async with self._lock:
            lines = []

            for name, by_labels in self._counters.items():
                metric_name = _metric_name(name)
                for key, counter in by_labels.items():
                    suffix = f"{{{_labels_str(key)}}}" if key else ""
                    lines.append(f"{metric_name}_total{suffix} {counter.value}")

            for name, by_labels in self._histograms.items():
                metric_name = _metric_name(name)
                for key, hist in by_labels.items():
                    if hist.count == 0:
                        continue
                    suffix = f"{{{_labels_str(key)}}}" if key else ""
                    lines.append(f"{metric_name}_sum{suffix} {round(hist.sum, 3)}")
                    lines.append(f"{metric_name}_count{suffix} {hist.count}")
                    for p, v in hist.percentiles(50, 90, 95, 99).items():
                        lines.append(f"{metric_name}_{p}{suffix} {v}")

            for name, by_labels in self._gauges.items():
                metric_name = _metric_name(name)
                for key, gauge in by_labels.items():
                    suffix = f"{{{_labels_str(key)}}}" if key else ""
                    lines.append(f"{metric_name}{suffix} {gauge.value}")

            return "\n".join(lines)
