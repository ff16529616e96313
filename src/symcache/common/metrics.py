"""Metrics utilities for exposing Prometheus-formatted data."""

from __future__ import annotations

from typing import Dict


def _format_labels(label_name: str, label_value: str) -> str:
    escaped = label_value.replace("\\", "\\\\").replace('"', '\\"')
    return f'{{{label_name}="{escaped}"}}'


class Counter:
    def __init__(self, name: str, description: str = "", label: str | None = None) -> None:
        self.name = name
        self.description = description
        self._label = label
        self._value = 0.0
        self._labelled: Dict[str, float] = {}

    def inc(self, amount: float = 1.0, label_value: str | None = None) -> None:
        if self._label and label_value is not None:
            self._labelled[label_value] = self._labelled.get(label_value, 0.0) + amount
        self._value += amount

    @property
    def value(self) -> float:
        return self._value

    def labelled_value(self, label_value: str) -> float:
        return self._labelled.get(label_value, 0.0)

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} counter"]
        if self._label and self._labelled:
            for label_value, value in sorted(self._labelled.items()):
                lines.append(f"{self.name}{_format_labels(self._label, label_value)} {value}")
        else:
            lines.append(f"{self.name} {self._value}")
        return "\n".join(lines) + "\n"


class Histogram:
    def __init__(self, name: str, buckets: list[float], description: str = "") -> None:
        self.name = name
        self.description = description
        self._buckets = sorted(buckets)
        self._counts = {b: 0 for b in self._buckets}
        self._sum = 0.0
        self._count = 0

    def observe(self, value: float) -> None:
        self._count += 1
        self._sum += value
        for bucket in self._buckets:
            if value <= bucket:
                self._counts[bucket] += 1

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} histogram"]
        for bucket in self._buckets:
            lines.append(f'{self.name}_bucket{{le="{bucket}"}} {self._counts[bucket]}')
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {self._count}')
        lines.append(f"{self.name}_sum {self._sum}")
        lines.append(f"{self.name}_count {self._count}")
        return "\n".join(lines) + "\n"


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, object] = {}

    def register(self, metric):
        self._metrics[getattr(metric, "name")] = metric
        return metric

    def render(self) -> str:
        return "\n".join(metric.render() for metric in self._metrics.values()) + "\n"


GLOBAL_REGISTRY = MetricsRegistry()
