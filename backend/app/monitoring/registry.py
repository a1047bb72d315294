"""In-process metrics registry rendered in the Prometheus text format."""

from __future__ import annotations

import time
from contextlib import contextmanager
from threading import Lock
from typing import Iterator, Mapping, Sequence


def _format_value(value: float) -> str:
    if value.is_integer():
        return str(int(value))
    return f"{value:.6f}".rstrip("0").rstrip(".")


def _format_labels(names: Sequence[str], values: Sequence[str]) -> str:
    if not names:
        return ""

    pairs = []
    for name, value in zip(names, values, strict=True):
        escaped = value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')
        pairs.append(f'{name}="{escaped}"')
    return "{" + ",".join(pairs) + "}"


class MetricsRegistry:
    """Collects metrics by name and renders them for scraping."""

    def __init__(self) -> None:
        self._metrics: dict[str, _MetricBase] = {}
        self._lock = Lock()

    def register(self, metric: "_MetricBase") -> None:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"Metric '{metric.name}' already registered")
            self._metrics[metric.name] = metric

    def counter(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> "CounterMetric":
        metric = CounterMetric(name=name, description=description, label_names=label_names)
        self.register(metric)
        return metric

    def gauge(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> "GaugeMetric":
        metric = GaugeMetric(name=name, description=description, label_names=label_names)
        self.register(metric)
        return metric

    def summary(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> "SummaryMetric":
        metric = SummaryMetric(name=name, description=description, label_names=label_names)
        self.register(metric)
        return metric

    def get(self, name: str) -> "_MetricBase | None":
        return self._metrics.get(name)

    def render(self) -> str:
        lines: list[str] = []
        for name in sorted(self._metrics):
            lines.extend(self._metrics[name].render())
        return "\n".join(lines) + "\n"


class _MetricBase:
    metric_type: str = "untyped"

    def __init__(self, *, name: str, description: str, label_names: Sequence[str]) -> None:
        self.name = name
        self.description = description
        self.label_names = tuple(label_names)
        self._samples: dict[tuple[str, ...], float] = {}
        self._lock = Lock()

    def _normalize_labels(self, provided: Mapping[str, object]) -> tuple[str, ...]:
        if set(provided) != set(self.label_names):
            expected = ", ".join(self.label_names) or "<none>"
            received = ", ".join(sorted(provided)) or "<none>"
            raise ValueError(
                f"Metric '{self.name}' expected labels [{expected}] but received [{received}]"
            )
        return tuple(str(provided[label]) for label in self.label_names)

    def labels(self, *values: object) -> "_LabeledMetric":
        """Bind positional label values, Prometheus client style."""

        if len(values) != len(self.label_names):
            raise ValueError(
                f"Metric '{self.name}' expected {len(self.label_names)} label values "
                f"but received {len(values)}"
            )
        return _LabeledMetric(self, tuple(str(value) for value in values))

    def value(self, *label_values: object) -> float:
        key = tuple(str(value) for value in label_values)
        with self._lock:
            return self._samples.get(key, 0.0)

    def _add(self, labels: tuple[str, ...], amount: float) -> None:
        with self._lock:
            self._samples[labels] = self._samples.get(labels, 0.0) + amount

    def _sample_lines(self) -> list[str]:
        with self._lock:
            samples = sorted(self._samples.items())
        if not samples:
            # Prometheus expects at least one sample.
            return [f"{self.name} 0"]
        return [
            f"{self.name}{_format_labels(self.label_names, labels)} {_format_value(value)}"
            for labels, value in samples
        ]

    def render(self) -> list[str]:
        header = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.metric_type}"]
        return header + self._sample_lines()


class CounterMetric(_MetricBase):
    metric_type = "counter"

    def inc(self, *, amount: float = 1.0, **labels: object) -> None:
        if amount < 0:
            raise ValueError("Counters cannot be incremented by negative values")
        self._add(self._normalize_labels(labels), amount)


class GaugeMetric(_MetricBase):
    metric_type = "gauge"

    def set(self, value: float, **labels: object) -> None:
        label_values = self._normalize_labels(labels)
        with self._lock:
            self._samples[label_values] = float(value)

    def inc(self, *, amount: float = 1.0, **labels: object) -> None:
        self._add(self._normalize_labels(labels), amount)

    def dec(self, *, amount: float = 1.0, **labels: object) -> None:
        self._add(self._normalize_labels(labels), -amount)


class SummaryMetric(_MetricBase):
    """Tracks count and sum of observations, without quantiles."""

    metric_type = "summary"

    def __init__(self, *, name: str, description: str, label_names: Sequence[str]) -> None:
        super().__init__(name=name, description=description, label_names=label_names)
        self._counts: dict[tuple[str, ...], int] = {}

    def observe(self, value: float, **labels: object) -> None:
        self._observe(self._normalize_labels(labels), value)

    def _observe(self, labels: tuple[str, ...], value: float) -> None:
        with self._lock:
            self._samples[labels] = self._samples.get(labels, 0.0) + value
            self._counts[labels] = self._counts.get(labels, 0) + 1

    def count(self, *label_values: object) -> int:
        key = tuple(str(value) for value in label_values)
        with self._lock:
            return self._counts.get(key, 0)

    @contextmanager
    def time(self, **labels: object) -> Iterator[None]:
        """Observe the wall-clock duration of the enclosed block, even if it raises."""

        label_values = self._normalize_labels(labels)
        started = time.perf_counter()
        try:
            yield
        finally:
            self._observe(label_values, time.perf_counter() - started)

    def _sample_lines(self) -> list[str]:
        with self._lock:
            keys = sorted(self._counts)
            rows = [(key, self._counts[key], self._samples.get(key, 0.0)) for key in keys]
        if not rows:
            return [f"{self.name}_count 0", f"{self.name}_sum 0"]
        lines: list[str] = []
        for labels, count, total in rows:
            label_block = _format_labels(self.label_names, labels)
            lines.append(f"{self.name}_count{label_block} {count}")
            lines.append(f"{self.name}_sum{label_block} {_format_value(total)}")
        return lines


class _LabeledMetric:
    """A metric bound to concrete label values: ``metric.labels("a").inc()``."""

    def __init__(self, metric: _MetricBase, label_values: tuple[str, ...]) -> None:
        self._metric = metric
        self._label_values = label_values

    def _kwargs(self) -> dict[str, str]:
        return dict(zip(self._metric.label_names, self._label_values, strict=True))

    def inc(self, amount: float = 1.0) -> None:
        if not isinstance(self._metric, (CounterMetric, GaugeMetric)):
            raise AttributeError("Only counters and gauges support inc()")
        self._metric.inc(amount=amount, **self._kwargs())

    def dec(self, amount: float = 1.0) -> None:
        if not isinstance(self._metric, GaugeMetric):
            raise AttributeError("Only gauges support dec()")
        self._metric.dec(amount=amount, **self._kwargs())

    def set(self, value: float) -> None:
        if not isinstance(self._metric, GaugeMetric):
            raise AttributeError("Only gauges support set()")
        self._metric.set(value, **self._kwargs())

    def observe(self, value: float) -> None:
        if not isinstance(self._metric, SummaryMetric):
            raise AttributeError("Only summaries support observe()")
        self._metric.observe(value, **self._kwargs())


# Shared registry instance used across the backend.
registry = MetricsRegistry()
