"""mirror.core.metrics

In-process counters and gauges for the mirror loops.

Names are dotted (``mirror.events_applied``, ``projector.skipped.<type>``).
Export is left to whoever embeds the mirror.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from threading import Lock
from typing import TypeVar


@dataclass
class _Metric:
    name: str
    _value: float = 0
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    @property
    def value(self) -> float:
        with self._lock:
            return self._value


@dataclass
class Counter(_Metric):
    """Monotonic. Only ever incremented."""

    _value: int = 0

    def inc(self, amount: int = 1) -> None:
        if amount < 0:
            raise ValueError(f"counter {self.name} cannot decrease")
        with self._lock:
            self._value += int(amount)


@dataclass
class Gauge(_Metric):
    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)


M = TypeVar("M", bound=_Metric)


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = Lock()
        self._metrics: dict[tuple[str, str], _Metric] = {}

    def _get(self, kind: str, name: str, factory: Callable[[str], M]) -> M:
        with self._lock:
            metric = self._metrics.get((kind, name))
            if metric is None:
                metric = self._metrics[(kind, name)] = factory(name)
            return metric  # type: ignore[return-value]

    def counter(self, name: str) -> Counter:
        return self._get("counter", name, Counter)

    def gauge(self, name: str) -> Gauge:
        return self._get("gauge", name, Gauge)

    def lag_gauge(self, chain: str, network_id: int) -> Gauge:
        return self.gauge(f"mirror.lag.{chain}.{network_id}")

    def counters_with_prefix(self, prefix: str) -> dict[str, int]:
        """Counter values under ``prefix``, keyed by the rest of the name."""

        with self._lock:
            found = [(n, m) for (kind, n), m in self._metrics.items() if kind == "counter" and n.startswith(prefix)]
        return {n.removeprefix(prefix): int(m.value) for n, m in found}

    def snapshot(self) -> dict[str, float]:
        with self._lock:
            items = list(self._metrics.items())
        return {f"{kind}.{name}": float(m.value) for (kind, name), m in sorted(items, key=lambda kv: kv[0])}


REGISTRY = MetricsRegistry()
