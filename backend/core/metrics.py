"""In-process billing and entitlement metrics, exported as Prometheus text."""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"")


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, label_names: Optional[Iterable[str]] = None):
        self.name = name
        self.label_names = list(label_names or [])
        self._values: Dict[Tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> Tuple[str, ...]:
        labels = labels or {}
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def export(self) -> List[str]:
        lines = [f"# TYPE {self.name} {self.kind}"]
        with self._lock:
            for key, value in self._values.items():
                label_str = ""
                if self.label_names:
                    pairs = ",".join(f'{n}="{_escape(v)}"' for n, v in zip(self.label_names, key))
                    label_str = "{" + pairs + "}"
                lines.append(f"{self.name}{label_str} {value}")
        return lines

    def reset(self):
        with self._lock:
            self._values.clear()


class Counter(_Metric):
    kind = "counter"

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0):
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)


class Gauge(_Metric):
    kind = "gauge"

    def set(self, value: float, labels: Optional[Dict[str, str]] = None):
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)


class MetricsRegistry:
    def __init__(self):
        self._metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def _register(self, cls, name: str, label_names: Optional[Iterable[str]]):
        with self._lock:
            if name not in self._metrics:
                self._metrics[name] = cls(name, label_names)
            return self._metrics[name]

    def counter(self, name: str, label_names: Optional[Iterable[str]] = None) -> Counter:
        return self._register(Counter, name, label_names)

    def gauge(self, name: str, label_names: Optional[Iterable[str]] = None) -> Gauge:
        return self._register(Gauge, name, label_names)

    def export_prometheus(self) -> str:
        lines: List[str] = []
        for metric in list(self._metrics.values()):
            lines.extend(metric.export())
        return "\n".join(lines) + "\n"

    def reset(self):
        for metric in list(self._metrics.values()):
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter("http_requests_total", ["method", "path", "status"])
checkout_sessions_total = METRICS.counter("checkout_sessions_total", ["outcome"])
webhook_events_total = METRICS.counter("webhook_events_total", ["event_type", "result"])
entitlements_created_total = METRICS.counter("entitlements_created_total", ["source"])
entitlements_revoked_total = METRICS.counter("entitlements_revoked_total", ["reason"])
entitlement_alarms_total = METRICS.counter("entitlement_alarms_total", ["reason"])
ws_connections_total = METRICS.counter("ws_connections_total")
ws_messages_sent_total = METRICS.counter("ws_messages_sent_total", ["event_type"])

ws_active_connections = METRICS.gauge("ws_active_connections")
entitlement_subscribers = METRICS.gauge("entitlement_subscribers")


# Payment references and ids never become path labels
_ID_SEGMENT = re.compile(r"^(\d+|[0-9a-fA-F-]{8,}|(pi|cs|ch|evt|cus)_[A-Za-z0-9]+)$")


def normalize_path(path: str) -> str:
    """Collapse id-like path segments to :id."""
    parts = [":id" if _ID_SEGMENT.match(seg) else seg for seg in path.split("/") if seg]
    return "/" + "/".join(parts)
