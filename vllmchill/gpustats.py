"""GPU statistics gathered from a management library and served as JSON."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from vllmchill.nvml import MockNVML, NVMLError

log = logging.getLogger(__name__)

MIB = 1024 * 1024
UNAVAILABLE_MESSAGE = "GPU stats not available (built without NVML support)"


@dataclass
class GPU:
    """Metrics of a single GPU."""

    index: int
    name: str = ""
    uuid: str = ""
    utilization: float = 0.0
    memory_used: int = 0
    memory_total: int = 0
    memory_util: float = 0.0
    temperature: int = 0
    power_draw: float = 0.0
    power_limit: float = 0.0
    fan_speed: int = 0
    encoder_util: int = 0
    decoder_util: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON representation with the served field names."""
        return {
            "index": self.index,
            "name": self.name,
            "uuid": self.uuid,
            "utilization_percent": self.utilization,
            "memory_used_mb": self.memory_used,
            "memory_total_mb": self.memory_total,
            "memory_util_percent": self.memory_util,
            "temperature_c": self.temperature,
            "power_draw_w": self.power_draw,
            "power_limit_w": self.power_limit,
            "fan_speed_percent": self.fan_speed,
            "encoder_util_percent": self.encoder_util,
            "decoder_util_percent": self.decoder_util,
        }


@dataclass
class GPUStats:
    """A timestamped set of GPU metrics."""

    timestamp: datetime
    gpus: list[GPU] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "gpus": [gpu.to_dict() for gpu in self.gpus],
        }


@dataclass
class Response:
    """An HTTP response produced by the handler."""

    status: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


def _device_stats(backend: Any, index: int, device: Any) -> GPU:
    gpu = GPU(index=index)
    try:
        gpu.name = backend.device_name(device)
    except NVMLError:
        pass
    try:
        gpu.uuid = backend.device_uuid(device)
    except NVMLError:
        pass
    try:
        gpu_util, _ = backend.device_utilization_rates(device)
        gpu.utilization = float(gpu_util)
    except NVMLError:
        pass
    try:
        used, _, total = backend.device_memory_info(device)
        gpu.memory_used = used // MIB
        gpu.memory_total = total // MIB
        if gpu.memory_total > 0:
            gpu.memory_util = gpu.memory_used / gpu.memory_total * 100
    except NVMLError:
        pass
    try:
        gpu.temperature = int(backend.device_temperature(device))
    except NVMLError:
        pass
    try:
        gpu.power_draw = backend.device_power_usage(device) / 1000.0
    except NVMLError:
        pass
    return gpu


class GPUStatsHandler:
    """Serves GPU statistics, caching results for ``cache_ttl`` seconds.

    Without a backend the handler reports that GPU statistics are unavailable.
    """

    def __init__(self, backend: Any = None, cache_ttl: float = 1.0) -> None:
        self.backend = backend
        self.cache_ttl = cache_ttl
        self._cache: GPUStats | None = None
        self._cache_time = 0.0
        self.initialized = False
        if backend is None:
            return
        try:
            backend.init()
        except NVMLError as exc:
            log.warning("[GPU-STATS] Failed to initialize NVML: %s", exc)
            return
        self.initialized = True
        log.info("[GPU-STATS] NVML initialized successfully")

    def shutdown(self) -> None:
        """Release the backend; calling it again does nothing."""
        if self.backend is None or not self.initialized:
            return
        self.backend.shutdown()
        self.initialized = False

    def query(self) -> GPUStats:
        """Query every device; raise NVMLError when nothing can be read."""
        if self.backend is None or not self.initialized:
            raise NVMLError("NVML not initialized")
        try:
            count = self.backend.device_count()
        except NVMLError as exc:
            raise NVMLError(f"failed to get device count: {exc}") from exc
        if count == 0:
            raise NVMLError("no GPUs found")

        stats = GPUStats(timestamp=datetime.now(timezone.utc))
        for index in range(count):
            try:
                device = self.backend.device_by_index(index)
            except NVMLError as exc:
                log.warning("[GPU-STATS] Failed to get device %d: %s", index, exc)
                continue
            stats.gpus.append(_device_stats(self.backend, index, device))

        if not stats.gpus:
            raise NVMLError("failed to query any GPUs")
        return stats

    def _base_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if isinstance(self.backend, MockNVML):
            headers["X-GPU-Type"] = "mock"
        return headers

    def serve(self, method: str = "GET") -> Response:
        """Answer a request for GPU statistics."""
        if method.upper() != "GET":
            return Response(405, {"error": "Method not allowed"}, {"Content-Type": "application/json"})
        if self.backend is None:
            return Response(503, {"error": UNAVAILABLE_MESSAGE}, {"Content-Type": "application/json"})

        headers = self._base_headers()
        if self._cache is not None and time.monotonic() - self._cache_time < self.cache_ttl:
            headers["X-Cache"] = "HIT"
            return Response(200, self._cache.to_dict(), headers)

        try:
            stats = self.query()
        except NVMLError as exc:
            log.error("[GPU-STATS] Failed to query GPU stats: %s", exc)
            return Response(500, {"error": f"Failed to query GPU: {exc}"}, headers)

        self._cache = stats
        self._cache_time = time.monotonic()
        headers["X-Cache"] = "MISS"
        return Response(200, stats.to_dict(), headers)