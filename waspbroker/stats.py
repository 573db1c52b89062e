"""In-process metrics with a text exposition endpoint."""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Iterator, Mapping, Sequence
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

_log = logging.getLogger(__name__)


def milliseconds_elapsed(start: float) -> float:
    """Milliseconds since ``start``, a ``time.perf_counter()`` reading."""
    return (time.perf_counter() - start) * 1000.0


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == int(value) and abs(value) < 1e15:
        return str(int(value))
    return repr(float(value))


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _render_labels(labels: Sequence[tuple[str, str]]) -> str:
    if not labels:
        return ""
    return "{" + ",".join(f'{key}="{_escape(value)}"' for key, value in labels) + "}"


class Gauge:
    """A value that can go up and down."""

    kind = "gauge"

    def __init__(self, name: str, help: str = "", labels: Sequence[tuple[str, str]] = ()) -> None:
        self.name = name
        self.help = help
        self.labels = tuple(labels)
        self._lock = threading.Lock()
        self._value = 0.0

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    def inc(self) -> None:
        self.add(1.0)

    def dec(self) -> None:
        self.add(-1.0)

    def add(self, value: float) -> None:
        with self._lock:
            self._value += value

    def sub(self, value: float) -> None:
        self.add(-value)

    def _samples(self) -> Iterator[str]:
        yield f"{self.name}{_render_labels(self.labels)} {_format_value(self.value)}"


class Histogram:
    """Observations counted into cumulative buckets."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        help: str = "",
        buckets: Sequence[float] = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
        labels: Sequence[tuple[str, str]] = (),
    ) -> None:
        self.name = name
        self.help = help
        self.buckets = tuple(sorted(float(b) for b in buckets if not math.isinf(b)))
        self.labels = tuple(labels)
        self._lock = threading.Lock()
        self._counts = [0] * len(self.buckets)
        self._count = 0
        self._sum = 0.0

    def observe(self, value: float) -> None:
        with self._lock:
            for idx, bound in enumerate(self.buckets):
                if value <= bound:
                    self._counts[idx] += 1
                    break
            self._count += 1
            self._sum += value

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def sum(self) -> float:
        with self._lock:
            return self._sum

    def cumulative_counts(self) -> list[tuple[float, int]]:
        """Bucket upper bounds with cumulative counts, ending with +Inf."""
        with self._lock:
            out = []
            running = 0
            for bound, count in zip(self.buckets, self._counts):
                running += count
                out.append((bound, running))
            out.append((math.inf, self._count))
            return out

    def _samples(self) -> Iterator[str]:
        for bound, count in self.cumulative_counts():
            labels = self.labels + (("le", _format_value(bound)),)
            yield f"{self.name}_bucket{_render_labels(labels)} {count}"
        yield f"{self.name}_sum{_render_labels(self.labels)} {_format_value(self.sum)}"
        yield f"{self.name}_count{_render_labels(self.labels)} {self.count}"


class _Vec:
    kind = ""

    def __init__(self, name: str, help: str, label_names: Sequence[str]) -> None:
        self.name = name
        self.help = help
        self.label_names = tuple(label_names)
        self._lock = threading.Lock()
        self._children: dict[tuple[str, ...], Gauge | Histogram] = {}

    def _key(self, labels: Mapping[str, str]) -> tuple[str, ...]:
        if set(labels) != set(self.label_names):
            raise ValueError(
                f"{self.name}: expected labels {sorted(self.label_names)}, got {sorted(labels)}"
            )
        return tuple(str(labels[name]) for name in self.label_names)

    def _child(self, labels: Mapping[str, str]):
        key = self._key(labels)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = self._children[key] = self._make(tuple(zip(self.label_names, key)))
            return child

    def _make(self, labels: tuple[tuple[str, str], ...]):
        raise NotImplementedError

    def _samples(self) -> Iterator[str]:
        with self._lock:
            children = [self._children[key] for key in sorted(self._children)]
        for child in children:
            yield from child._samples()


class GaugeVec(_Vec):
    """A family of gauges split by label values."""

    kind = "gauge"

    def _make(self, labels: tuple[tuple[str, str], ...]) -> Gauge:
        return Gauge(self.name, self.help, labels)

    def with_labels(self, labels: Mapping[str, str]) -> Gauge:
        return self._child(labels)


class HistogramVec(_Vec):
    """A family of histograms split by label values."""

    kind = "histogram"

    def __init__(
        self, name: str, help: str, label_names: Sequence[str], buckets: Sequence[float]
    ) -> None:
        super().__init__(name, help, label_names)
        self.buckets = tuple(buckets)

    def _make(self, labels: tuple[tuple[str, str], ...]) -> Histogram:
        return Histogram(self.name, self.help, self.buckets, labels)

    def with_labels(self, labels: Mapping[str, str]) -> Histogram:
        return self._child(labels)


_PUBLISH_BUCKETS = (0.0001, 0.0002, 0.0005, 0.0008, 1, 100, 5000)

_GAUGE_VECS: dict[str, GaugeVec] = {
    "egressBytes": GaugeVec("wasp_egress_bytes", "The total count of outgoing bytes.", ["protocol"]),
    "ingressBytes": GaugeVec(
        "wasp_ingress_bytes", "The total count of incoming bytes.", ["protocol"]
    ),
}
_GAUGES: dict[str, Gauge] = {
    "subscriptionsCount": Gauge(
        "wasp_subscriptions_count", "The total number of MQTT subscriptions."
    ),
    "retainedMessagesCount": Gauge(
        "wasp_retained_messages_count", "The total number of MQTT retained messages."
    ),
    "sessionsCount": Gauge(
        "wasp_sessions_count", "The total number of MQTT sessions connected to this node."
    ),
}
_HISTOGRAMS: dict[str, Histogram] = {
    "publishLocalProcessingTime": Histogram(
        "wasp_publish_packets_local_processing_time_milliseconds",
        "The time elapsed resolving recipients and distributing MQTT publish messages.",
        _PUBLISH_BUCKETS,
    ),
    "publishRemoteProcessingTime": Histogram(
        "wasp_publish_packets_remote_processing_time_milliseconds",
        "The time elapsed resolving recipients for MQTT publish messages.",
        _PUBLISH_BUCKETS,
    ),
}
_HISTOGRAM_VECS: dict[str, HistogramVec] = {
    "sessionPacketHandling": HistogramVec(
        "wasp_session_packets_processing_time_milliseconds",
        "The time elapsed handling session MQTT packets.",
        ["packet_type"],
        (0.001, 0.01, 0.1, 1, 50, 5000),
    ),
}


def gauge(name: str) -> Gauge:
    return _GAUGES[name]


def histogram(name: str) -> Histogram:
    return _HISTOGRAMS[name]


def gauge_vec(name: str) -> GaugeVec:
    return _GAUGE_VECS[name]


def histogram_vec(name: str) -> HistogramVec:
    return _HISTOGRAM_VECS[name]


def render_metrics() -> str:
    """All registered metrics in the text exposition format."""
    metrics = [
        *_GAUGE_VECS.values(),
        *_GAUGES.values(),
        *_HISTOGRAMS.values(),
        *_HISTOGRAM_VECS.values(),
    ]
    lines: list[str] = []
    for metric in sorted(metrics, key=lambda m: m.name):
        lines.append(f"# HELP {metric.name} {metric.help}")
        lines.append(f"# TYPE {metric.name} {metric.kind}")
        lines.extend(metric._samples())
    return "\n".join(lines) + "\n"


class _MetricsHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:
        if self.path.split("?", 1)[0] != "/metrics":
            self.send_error(404)
            return
        body = render_metrics().encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; version=0.0.4; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: object) -> None:
        _log.debug("%s - " + format, self.address_string(), *args)


def listen_and_serve(port: int) -> None:
    """Serve ``/metrics`` on all interfaces, blocking forever."""
    with ThreadingHTTPServer(("0.0.0.0", port), _MetricsHandler) as server:
        server.serve_forever()