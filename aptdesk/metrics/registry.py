"""In-memory metrics registry."""
from __future__ import annotations

from threading import Lock
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Tuple, TypeVar

from .base import CounterMetric, DistributionMetric, Metric

_M = TypeVar("_M", bound=Metric)


class MetricsRegistry:
    """Registry that owns metric instances by name."""

    def __init__(self) -> None:
        self._metrics: MutableMapping[str, Metric] = {}
        self._lock = Lock()

    def _get_or_create(self, name: str, kind: type[_M], factory: Callable[[], _M]) -> _M:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = self._metrics[name] = factory()
        if not isinstance(metric, kind):
            raise TypeError(f"Metric '{name}' already exists with a different type")
        return metric

    def counter(
        self, name: str, *, description: str = "", label_names: Iterable[str] | None = None
    ) -> CounterMetric:
        return self._get_or_create(
            name, CounterMetric, lambda: CounterMetric(name, description=description, label_names=label_names)
        )

    def distribution(
        self, name: str, *, description: str = "", label_names: Iterable[str] | None = None
    ) -> DistributionMetric:
        return self._get_or_create(
            name,
            DistributionMetric,
            lambda: DistributionMetric(name, description=description, label_names=label_names),
        )

    def metrics(self) -> Tuple[Metric, ...]:
        with self._lock:
            return tuple(self._metrics.values())

    def snapshot(self) -> Dict[str, Mapping[Tuple[str, ...], Mapping[str, float]]]:
        return {metric.name: metric.snapshot() for metric in self.metrics()}
