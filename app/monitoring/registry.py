"""In-process metrics registry rendered in the Prometheus text format."""

from __future__ import annotations

from threading import Lock
from typing import Iterator, Sequence


def _format_value(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.6f}".rstrip("0").rstrip(".")


def _escape(value: str) -> str:
    return value.replace("\\", r"\\").replace("\n", r"\n").replace('"', r"\"")


def _label_block(names: Sequence[str], values: Sequence[str], extra: str = "") -> str:
    pairs = [f'{name}="{_escape(value)}"' for name, value in zip(names, values, strict=True)]
    if extra:
        pairs.append(extra)
    return "{" + ",".join(pairs) + "}" if pairs else ""


class MetricsRegistry:
    """Collects metrics by name and renders them for scraping."""

    def __init__(self) -> None:
        self._metrics: dict[str, Metric] = {}
        self._lock = Lock()

    def _add(self, metric: "Metric") -> "Metric":
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"Metric '{metric.name}' already registered")
            self._metrics[metric.name] = metric
        return metric

    def counter(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> "Counter":
        return self._add(Counter(name, description, label_names))  # type: ignore[return-value]

    def gauge(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> "Gauge":
        return self._add(Gauge(name, description, label_names))  # type: ignore[return-value]

    def summary(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> "Summary":
        return self._add(Summary(name, description, label_names))  # type: ignore[return-value]

    def get(self, name: str) -> "Metric | None":
        return self._metrics.get(name)

    def reset(self) -> None:
        """Drop every recorded sample while keeping metric definitions."""

        for metric in list(self._metrics.values()):
            metric.clear()

    def render(self) -> str:
        lines: list[str] = []
        for name in sorted(self._metrics):
            lines.extend(self._metrics[name].render())
        return "\n".join(lines) + "\n"


class Metric:
    metric_type = "untyped"

    def __init__(self, name: str, description: str, label_names: Sequence[str]) -> None:
        self.name = name
        self.description = description
        self.label_names = tuple(label_names)
        self._samples: dict[tuple[str, ...], float] = {}
        self._lock = Lock()

    def _key(self, values: Sequence[object]) -> tuple[str, ...]:
        if len(values) != len(self.label_names):
            expected = ", ".join(self.label_names) or "<none>"
            raise ValueError(
                f"Metric '{self.name}' expected labels [{expected}] but received {len(values)} value(s)"
            )
        return tuple(str(value) for value in values)

    def labels(self, *values: object) -> "BoundMetric":
        """Bind label values, Prometheus style: ``metric.labels("a", "b").inc()``."""

        return BoundMetric(self, self._key(values))

    def value(self, *values: object) -> float:
        with self._lock:
            return self._samples.get(self._key(values), 0.0)

    def clear(self) -> None:
        with self._lock:
            self._samples.clear()

    def _add_to(self, key: tuple[str, ...], amount: float) -> None:
        with self._lock:
            self._samples[key] = self._samples.get(key, 0.0) + amount

    def _set(self, key: tuple[str, ...], value: float) -> None:
        with self._lock:
            self._samples[key] = float(value)

    def _snapshot(self) -> list[tuple[tuple[str, ...], float]]:
        with self._lock:
            return sorted(self._samples.items())

    def _sample_lines(self) -> Iterator[str]:
        samples = self._snapshot()
        if not samples:
            yield f"{self.name} 0"
            return
        for key, value in samples:
            yield f"{self.name}{_label_block(self.label_names, key)} {_format_value(value)}"

    def render(self) -> list[str]:
        header = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.metric_type}"]
        return header + list(self._sample_lines())


class Counter(Metric):
    metric_type = "counter"

    def inc(self, *values: object, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("Counters cannot be incremented by negative values")
        self._add_to(self._key(values), amount)


class Gauge(Metric):
    metric_type = "gauge"

    def inc(self, *values: object, amount: float = 1.0) -> None:
        self._add_to(self._key(values), amount)

    def dec(self, *values: object, amount: float = 1.0) -> None:
        self._add_to(self._key(values), -amount)

    def set(self, value: float, *values: object) -> None:
        self._set(self._key(values), value)


class Summary(Metric):
    """Count and sum of observations, e.g. durations in seconds."""

    metric_type = "summary"

    def __init__(self, name: str, description: str, label_names: Sequence[str]) -> None:
        super().__init__(name, description, label_names)
        self._counts: dict[tuple[str, ...], int] = {}

    def observe(self, amount: float, *values: object) -> None:
        key = self._key(values)
        with self._lock:
            self._samples[key] = self._samples.get(key, 0.0) + amount
            self._counts[key] = self._counts.get(key, 0) + 1

    def count(self, *values: object) -> int:
        with self._lock:
            return self._counts.get(self._key(values), 0)

    def clear(self) -> None:
        with self._lock:
            self._samples.clear()
            self._counts.clear()

    def _sample_lines(self) -> Iterator[str]:
        samples = self._snapshot()
        if not samples:
            yield f"{self.name}_count 0"
            yield f"{self.name}_sum 0"
            return
        for key, total in samples:
            block = _label_block(self.label_names, key)
            with self._lock:
                count = self._counts.get(key, 0)
            yield f"{self.name}_count{block} {count}"
            yield f"{self.name}_sum{block} {_format_value(total)}"


class BoundMetric:
    """Metric bound to one concrete tuple of label values."""

    def __init__(self, metric: Metric, key: tuple[str, ...]) -> None:
        self._metric = metric
        self._key = key

    def inc(self, amount: float = 1.0) -> None:
        if not isinstance(self._metric, (Counter, Gauge)):
            raise AttributeError(f"{type(self._metric).__name__} does not support inc()")
        self._metric.inc(*self._key, amount=amount)

    def dec(self, amount: float = 1.0) -> None:
        if not isinstance(self._metric, Gauge):
            raise AttributeError("Only gauges support dec()")
        self._metric.dec(*self._key, amount=amount)

    def set(self, value: float) -> None:
        if not isinstance(self._metric, Gauge):
            raise AttributeError("Only gauges support set()")
        self._metric.set(value, *self._key)

    def observe(self, amount: float) -> None:
        if not isinstance(self._metric, Summary):
            raise AttributeError("Only summaries support observe()")
        self._metric.observe(amount, *self._key)


# Shared registry instance used across the backend.
registry = MetricsRegistry()
