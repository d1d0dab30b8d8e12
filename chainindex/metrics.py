"""In-process metrics registry, text exposition and process statistics."""

from __future__ import annotations

import bisect
import itertools
import logging
import math
import os
import re
import sys
import threading
import time
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Iterable, Sequence

from .errors import IndexerError

logger = logging.getLogger(__name__)

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
_NAME_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_RE = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")
_EXPORT_INTERVAL = 5.0


def _fmt(value: float) -> str:
    if isinstance(value, float):
        if math.isinf(value):
            return "+Inf" if value > 0 else "-Inf"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _render_labels(pairs: Sequence[tuple[str, str]]) -> str:
    if not pairs:
        return ""
    return "{" + ",".join(f'{key}="{_escape(val)}"' for key, val in pairs) + "}"


class Counter:
    """A monotonically increasing integer."""

    kind = "counter"

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def inc(self, amount: int = 1) -> None:
        if amount < 0:
            raise ValueError("counter cannot decrease")
        with self._lock:
            self._value += amount

    def get(self) -> int:
        return self._value

    def _samples(self, name: str, labels: Sequence[tuple[str, str]]) -> list[str]:
        return [f"{name}{_render_labels(labels)} {_fmt(self._value)}"]


class Gauge:
    """A value that can go up and down."""

    kind = "gauge"

    def __init__(self) -> None:
        self._value: float = 0
        self._lock = threading.Lock()

    def set(self, value: float) -> None:
        with self._lock:
            self._value = value

    def inc(self, amount: float = 1) -> None:
        with self._lock:
            self._value += amount

    def dec(self, amount: float = 1) -> None:
        with self._lock:
            self._value -= amount

    def get(self) -> float:
        return self._value

    def _samples(self, name: str, labels: Sequence[tuple[str, str]]) -> list[str]:
        return [f"{name}{_render_labels(labels)} {_fmt(self._value)}"]


class HistogramTimer:
    """Measures elapsed time and records it into a histogram once."""

    def __init__(self, histogram: "Histogram") -> None:
        self._histogram = histogram
        self._start = time.perf_counter()
        self._done = False

    def stop(self) -> float:
        elapsed = time.perf_counter() - self._start
        if not self._done:
            self._done = True
            self._histogram.observe(elapsed)
        return elapsed

    def __enter__(self) -> "HistogramTimer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()


class Histogram:
    """Counts observations into cumulative buckets."""

    kind = "histogram"

    def __init__(self, buckets: Iterable[float] = DEFAULT_BUCKETS) -> None:
        self._bounds = tuple(sorted(float(b) for b in buckets))
        self._counts = [0] * len(self._bounds)
        self._sum = 0.0
        self._count = 0
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        with self._lock:
            index = bisect.bisect_left(self._bounds, value)
            if index < len(self._counts):
                self._counts[index] += 1
            self._sum += value
            self._count += 1

    def start_timer(self) -> HistogramTimer:
        return HistogramTimer(self)

    @property
    def count(self) -> int:
        return self._count

    @property
    def sum(self) -> float:
        return self._sum

    def _samples(self, name: str, labels: Sequence[tuple[str, str]]) -> list[str]:
        with self._lock:
            cumulative = list(itertools.accumulate(self._counts))
            total, count = self._sum, self._count
        lines = [
            f"{name}_bucket{_render_labels([*labels, ('le', _fmt(bound))])} {n}"
            for bound, n in zip(self._bounds, cumulative)
        ]
        lines.append(f"{name}_bucket{_render_labels([*labels, ('le', '+Inf')])} {count}")
        lines.append(f"{name}_sum{_render_labels(labels)} {_fmt(total)}")
        lines.append(f"{name}_count{_render_labels(labels)} {count}")
        return lines


class MetricVec:
    """A family of metrics of one kind, keyed by label values."""

    def __init__(self, factory: type, labels: Sequence[str]) -> None:
        for label in labels:
            if not _LABEL_RE.fullmatch(label):
                raise ValueError(f"invalid label name {label!r}")
        self._factory = factory
        self._labels = tuple(labels)
        self._children: dict[tuple[str, ...], object] = {}
        self._lock = threading.Lock()
        self.kind = factory.kind

    def with_label_values(self, *args: str):
        if len(args) != len(self._labels):
            raise ValueError(
                f"expected {len(self._labels)} label values, got {len(args)}"
            )
        key = tuple(str(arg) for arg in args)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = self._children[key] = self._factory()
            return child

    def _samples(self, name: str, labels: Sequence[tuple[str, str]]) -> list[str]:
        with self._lock:
            children = sorted(self._children.items())
        lines: list[str] = []
        for key, child in children:
            lines.extend(child._samples(name, [*labels, *zip(self._labels, key)]))
        return lines


@dataclass(frozen=True)
class Stats:
    """Resource usage of the current process."""

    utime: float
    rss: int
    fds: int


def _stats_from_proc(stat_text: str, page_size: int, ticks_per_second: float, fds: int) -> Stats:
    parts = stat_text.split()

    def part(index: int, name: str) -> int:
        try:
            raw = parts[index]
        except IndexError:
            raise IndexerError(f"missing {name}: {parts!r}") from None
        if not re.fullmatch(r"\+?[0-9]+", raw):
            raise IndexerError(f"invalid {name}: {parts!r}")
        return int(raw)

    # field layout is described in the /proc/[pid]/stat section of proc(5)
    utime = part(13, "utime") / ticks_per_second
    rss = part(23, "rss") * page_size
    return Stats(utime=utime, rss=rss, fds=fds)


def parse_stats() -> Stats:
    """Read CPU time, resident memory and open descriptors of this process."""
    if sys.platform == "darwin":
        return Stats(utime=0.0, rss=0, fds=0)
    try:
        text = Path("/proc/self/stat").read_text()
    except OSError as exc:
        raise IndexerError("failed to read stats") from exc
    page_size = os.sysconf("SC_PAGE_SIZE")
    ticks_per_second = float(os.sysconf("SC_CLK_TCK"))
    try:
        with os.scandir("/proc/self/fd") as entries:
            fds = sum(1 for _ in entries)
    except OSError as exc:
        raise IndexerError("failed to read fd directory") from exc
    return _stats_from_proc(text, page_size, ticks_per_second, fds)


class Metrics:
    """A registry of named metrics, served over HTTP once started."""

    def __init__(self, addr: tuple[str, int]) -> None:
        self.addr = addr
        self._registry: dict[str, tuple[str, object]] = {}
        self._lock = threading.Lock()
        self._server: ThreadingHTTPServer | None = None
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def address(self) -> tuple[str, int]:
        """The bound address once started, else the configured one."""
        if self._server is not None:
            host, port = self._server.server_address[:2]
            return host, port
        return self.addr

    def _register(self, name: str, help: str, metric):
        if not _NAME_RE.fullmatch(name):
            raise ValueError(f"invalid metric name {name!r}")
        with self._lock:
            if name in self._registry:
                raise ValueError(f"metric {name!r} is already registered")
            self._registry[name] = (help, metric)
        return metric

    def counter(self, name: str, help: str) -> Counter:
        return self._register(name, help, Counter())

    def counter_vec(self, name: str, help: str, labels: Sequence[str]) -> MetricVec:
        return self._register(name, help, MetricVec(Counter, labels))

    def gauge(self, name: str, help: str) -> Gauge:
        return self._register(name, help, Gauge())

    def gauge_vec(self, name: str, help: str, labels: Sequence[str]) -> MetricVec:
        return self._register(name, help, MetricVec(Gauge, labels))

    def histogram(self, name: str, help: str) -> Histogram:
        return self._register(name, help, Histogram())

    def histogram_vec(self, name: str, help: str, labels: Sequence[str]) -> MetricVec:
        return self._register(name, help, MetricVec(Histogram, labels))

    def gather(self) -> str:
        """Render every registered metric in the text exposition format."""
        with self._lock:
            families = sorted(self._registry.items())
        lines: list[str] = []
        for name, (help, metric) in families:
            escaped = help.replace("\\", "\\\\").replace("\n", "\\n")
            lines.append(f"# HELP {name} {escaped}")
            lines.append(f"# TYPE {name} {metric.kind}")
            lines.extend(metric._samples(name, ()))
        return "".join(line + "\n" for line in lines)

    def start(self) -> None:
        """Serve metrics over HTTP and begin exporting process statistics."""
        metrics = self

        class _Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:
                body = metrics.gather().encode()
                self.send_response(200)
                self.send_header("Content-Type", "text/plain; version=0.0.4")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: object) -> None:
                logger.debug("metrics http: " + format, *args)

        try:
            server = ThreadingHTTPServer(self.addr, _Handler)
        except OSError as exc:
            raise IndexerError(
                f"failed to start monitoring HTTP server at {self.addr[0]}:{self.addr[1]}"
            ) from exc
        server.daemon_threads = True
        self._server = server
        self._stop.clear()
        self._start_process_exporter()
        thread = threading.Thread(target=server.serve_forever, name="metrics", daemon=True)
        thread.start()
        self._threads.append(thread)

    def _start_process_exporter(self) -> None:
        rss = self.gauge("process_memory_rss", "Resident memory size [bytes]")
        cpu = self.gauge_vec(
            "process_cpu_usage", "CPU usage by this process [seconds]", ["type"]
        )
        fds = self.gauge("process_fs_fds", "# of file descriptors")

        def run() -> None:
            while True:
                try:
                    stats = parse_stats()
                except IndexerError as exc:
                    logger.warning("failed to export stats: %s", exc)
                else:
                    cpu.with_label_values("utime").set(stats.utime)
                    rss.set(stats.rss)
                    fds.set(stats.fds)
                if self._stop.wait(_EXPORT_INTERVAL):
                    return

        thread = threading.Thread(target=run, name="exporter", daemon=True)
        thread.start()
        self._threads.append(thread)

    def stop(self) -> None:
        """Stop the HTTP server and the exporter."""
        self._stop.set()
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        for thread in self._threads:
            thread.join()
        self._threads.clear()