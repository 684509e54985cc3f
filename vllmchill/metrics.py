"""Prometheus-style metrics for the proxy and a recorder that feeds them."""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import IntEnum
from typing import Iterable

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
PAYLOAD_BUCKETS = (100, 1000, 10000, 100000, 1000000, 10000000)


class VLLMState(IntEnum):
    STOPPED = 0
    STARTING = 1
    RUNNING = 2
    STOPPING = 3


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == int(value) and abs(value) < 1e15:
        return str(int(value))
    return repr(float(value))


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _seconds(duration: float | timedelta) -> float:
    if isinstance(duration, timedelta):
        return duration.total_seconds()
    return float(duration)


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help: str, labelnames: Iterable[str] = ()) -> None:
        self.name = name
        self.help = help
        self.labelnames = tuple(labelnames)
        self._lock = threading.Lock()
        self._series: dict[tuple[str, ...], object] = {}
        if not self.labelnames:
            self._series[()] = self._new_series()

    def _new_series(self):
        return 0.0

    def _key(self, args: tuple) -> tuple[str, ...]:
        if len(args) != len(self.labelnames):
            raise ValueError(
                f"{self.name}: expected {len(self.labelnames)} label values, got {len(args)}"
            )
        return tuple(str(a) for a in args)

    def _labels(self, key: tuple[str, ...], extra: tuple[tuple[str, str], ...] = ()) -> str:
        pairs = list(zip(self.labelnames, key)) + list(extra)
        if not pairs:
            return ""
        return "{" + ",".join(f'{n}="{_escape_label(v)}"' for n, v in pairs) + "}"

    def _sample_lines(self, key, data) -> list[str]:
        return [f"{self.name}{self._labels(key)} {_format_value(data)}"]

    def render(self) -> list[str]:
        with self._lock:
            items = sorted(self._series.items())
            if not items:
                return []
            lines = [
                f"# HELP {self.name} {_escape_help(self.help)}",
                f"# TYPE {self.name} {self.kind}",
            ]
            for key, data in items:
                lines.extend(self._sample_lines(key, data))
        return lines


class Counter(_Metric):
    """A monotonically increasing value per label set."""

    kind = "counter"

    def __init__(self, name: str, help: str, labelnames: Iterable[str] = ()) -> None:
        super().__init__(name, help, labelnames)

    def inc(self, *args: str, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError(f"{self.name}: counter cannot decrease")
        key = self._key(args)
        with self._lock:
            self._series[key] = self._series.get(key, 0.0) + amount

    def value(self, *args: str) -> float:
        key = self._key(args)
        with self._lock:
            return float(self._series.get(key, 0.0))


class Gauge(_Metric):
    """A value that can go up and down, per label set."""

    kind = "gauge"

    def __init__(self, name: str, help: str, labelnames: Iterable[str] = ()) -> None:
        super().__init__(name, help, labelnames)

    def set(self, value: float, *args: str) -> None:
        key = self._key(args)
        with self._lock:
            self._series[key] = float(value)

    def value(self, *args: str) -> float:
        key = self._key(args)
        with self._lock:
            return float(self._series.get(key, 0.0))


@dataclass
class _HistogramSeries:
    bucket_counts: list[int]
    total: float = 0.0
    count: int = 0


class Histogram(_Metric):
    """Observations counted into cumulative buckets, per label set."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        help: str,
        buckets: Iterable[float] = DEFAULT_BUCKETS,
        labelnames: Iterable[str] = (),
    ) -> None:
        bounds = sorted(float(b) for b in buckets if not math.isinf(float(b)))
        if any(a >= b for a, b in zip(bounds, bounds[1:])):
            raise ValueError(f"{name}: histogram buckets must be strictly increasing")
        self.buckets = tuple(bounds)
        super().__init__(name, help, labelnames)

    def _new_series(self) -> _HistogramSeries:
        return _HistogramSeries(bucket_counts=[0] * len(self.buckets))

    def observe(self, value: float, *args: str) -> None:
        key = self._key(args)
        with self._lock:
            series = self._series.get(key)
            if series is None:
                series = self._series[key] = self._new_series()
            for i, bound in enumerate(self.buckets):
                if value <= bound:
                    series.bucket_counts[i] += 1
            series.total += value
            series.count += 1

    def count(self, *args: str) -> int:
        key = self._key(args)
        with self._lock:
            series = self._series.get(key)
            return series.count if series else 0

    def total(self, *args: str) -> float:
        key = self._key(args)
        with self._lock:
            series = self._series.get(key)
            return series.total if series else 0.0

    def _sample_lines(self, key, data: _HistogramSeries) -> list[str]:
        lines = [
            f"{self.name}_bucket{self._labels(key, (('le', _format_value(bound)),))} {n}"
            for bound, n in zip(self.buckets, data.bucket_counts)
        ]
        lines.append(f"{self.name}_bucket{self._labels(key, (('le', '+Inf'),))} {data.count}")
        lines.append(f"{self.name}_sum{self._labels(key)} {_format_value(data.total)}")
        lines.append(f"{self.name}_count{self._labels(key)} {data.count}")
        return lines


class MetricsRegistry:
    """The full set of proxy metrics, rendered in the text exposition format."""

    def __init__(self) -> None:
        self._metrics: list[_Metric] = []
        add = self._add
        self.requests_total = add(Counter(
            "vllm_chill_requests_total", "Total number of requests received",
            ("method", "path", "status")))
        self.request_duration = add(Histogram(
            "vllm_chill_request_duration_seconds", "Request duration in seconds",
            DEFAULT_BUCKETS, ("method", "path", "status")))
        self.request_payload_size = add(Histogram(
            "vllm_chill_request_payload_bytes", "Request payload size in bytes",
            PAYLOAD_BUCKETS, ("method", "path")))
        self.response_payload_size = add(Histogram(
            "vllm_chill_response_payload_bytes", "Response payload size in bytes",
            PAYLOAD_BUCKETS, ("method", "path", "status")))
        self.managed_operations = add(Counter(
            "vllm_chill_managed_operations_total",
            "Total number of managed operations (model switches)",
            ("from_model", "to_model", "status")))
        self.managed_operation_duration = add(Histogram(
            "vllm_chill_managed_operation_duration_seconds",
            "Managed operation duration in seconds",
            (10, 30, 60, 120, 300, 600), ("from_model", "to_model")))
        self.scale_ops = add(Counter(
            "vllm_chill_scale_operations_total", "Total number of scale operations",
            ("direction", "status")))
        self.scale_op_duration = add(Histogram(
            "vllm_chill_scale_operation_duration_seconds",
            "Scale operation duration in seconds",
            (1, 5, 10, 30, 60, 120), ("direction",)))
        self.current_replicas = add(Gauge(
            "vllm_chill_current_replicas", "Current number of replicas"))
        self.idle_time_seconds = add(Gauge(
            "vllm_chill_idle_time_seconds", "Time since last activity in seconds"))
        self.current_model = add(Gauge(
            "vllm_chill_current_model", "Current model loaded (1 if loaded, 0 otherwise)",
            ("model_name",)))
        self.xml_parsing_total = add(Counter(
            "vllm_chill_xml_parsing_total",
            "Total number of XML tool calls parsed and converted", ("status",)))
        self.xml_tool_calls_detected = add(Counter(
            "vllm_chill_xml_tool_calls_detected_total",
            "Total number of tool calls detected in XML format"))
        self.proxy_latency = add(Histogram(
            "vllm_chill_proxy_latency_seconds",
            "Latency added by the proxy before forwarding to vLLM",
            (0.001, 0.005, 0.010, 0.025, 0.050, 0.100, 0.250, 0.500, 1.000),
            ("operation",)))
        self.vllm_startup_duration = add(Histogram(
            "vllm_chill_vllm_startup_duration_seconds",
            "Time taken for vLLM to start and become ready",
            (10, 20, 30, 45, 60, 90, 120, 180, 240, 300, 420, 600)))
        self.vllm_shutdown_duration = add(Histogram(
            "vllm_chill_vllm_shutdown_duration_seconds",
            "Time taken for vLLM to shut down completely",
            (1, 2, 5, 10, 15, 30, 60)))
        self.vllm_state = add(Gauge(
            "vllm_chill_vllm_state",
            "Current vLLM state: 0=stopped, 1=starting, 2=running, 3=stopping"))

    def _add(self, metric):
        self._metrics.append(metric)
        return metric

    def render(self) -> str:
        lines: list[str] = []
        for metric in self._metrics:
            lines.extend(metric.render())
        return "\n".join(lines) + "\n" if lines else ""


default_registry = MetricsRegistry()


class MetricsRecorder:
    """Records proxy activity into a registry and keeps the idle gauge current."""

    def __init__(self, registry: MetricsRegistry | None = None, idle_interval: float = 10.0) -> None:
        self.registry = registry if registry is not None else default_registry
        self.current_model_name = ""
        self.last_activity = time.monotonic()
        self._lock = threading.Lock()
        self._interval = idle_interval
        self._stopped = threading.Event()
        self._thread = threading.Thread(
            target=self._update_idle_time, name="idle-time-updater", daemon=True
        )
        self._thread.start()

    def __enter__(self) -> "MetricsRecorder":
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def stop(self) -> None:
        self._stopped.set()
        if self._thread is not threading.current_thread():
            self._thread.join()

    def _update_idle_time(self) -> None:
        while not self._stopped.wait(self._interval):
            with self._lock:
                idle = time.monotonic() - self.last_activity
            self.registry.idle_time_seconds.set(idle)

    def record_request(
        self,
        method: str,
        path: str,
        status: int,
        duration: float | timedelta,
        request_size: int,
        response_size: int,
    ) -> None:
        reg = self.registry
        status_str = str(status)
        reg.requests_total.inc(method, path, status_str)
        reg.request_duration.observe(_seconds(duration), method, path, status_str)
        if request_size > 0:
            reg.request_payload_size.observe(float(request_size), method, path)
        if response_size > 0:
            reg.response_payload_size.observe(float(response_size), method, path, status_str)

    def record_managed_operation(
        self, from_model: str, to_model: str, success: bool, duration: float | timedelta
    ) -> None:
        reg = self.registry
        status = "success" if success else "failure"
        reg.managed_operations.inc(from_model, to_model, status)
        if success:
            reg.managed_operation_duration.observe(_seconds(duration), from_model, to_model)
        with self._lock:
            if self.current_model_name and self.current_model_name != to_model:
                reg.current_model.set(0, self.current_model_name)
            if success:
                self.current_model_name = to_model
                reg.current_model.set(1, to_model)

    def record_scale_op(self, direction: str, success: bool, duration: float | timedelta) -> None:
        status = "success" if success else "failure"
        self.registry.scale_ops.inc(direction, status)
        if success:
            self.registry.scale_op_duration.observe(_seconds(duration), direction)

    def update_replicas(self, replicas: int) -> None:
        self.registry.current_replicas.set(float(replicas))

    def update_activity(self) -> None:
        with self._lock:
            self.last_activity = time.monotonic()

    def set_current_model(self, model_name: str) -> None:
        with self._lock:
            if self.current_model_name and self.current_model_name != model_name:
                self.registry.current_model.set(0, self.current_model_name)
            self.current_model_name = model_name
            self.registry.current_model.set(1, model_name)

    def record_xml_parsing(self, success: bool, tool_call_count: int) -> None:
        self.registry.xml_parsing_total.inc("success" if success else "failure")
        if success and tool_call_count > 0:
            self.registry.xml_tool_calls_detected.inc(amount=float(tool_call_count))

    def record_proxy_latency(self, operation: str, duration: float | timedelta) -> None:
        self.registry.proxy_latency.observe(_seconds(duration), operation)

    def record_vllm_startup(self, duration: float | timedelta) -> None:
        self.registry.vllm_startup_duration.observe(_seconds(duration))

    def record_vllm_shutdown(self, duration: float | timedelta) -> None:
        self.registry.vllm_shutdown_duration.observe(_seconds(duration))

    def set_vllm_state(self, state: int | VLLMState) -> None:
        self.registry.vllm_state.set(float(int(state)))