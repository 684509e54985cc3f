"""An in-memory GPU management library with two simulated devices."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

log = logging.getLogger(__name__)

GIB = 1024 * 1024 * 1024
COMPUTE_MODE_DEFAULT = 0
FEATURE_ENABLED = 1


class NVMLError(Exception):
    """Raised when a device query cannot be answered."""


@dataclass(frozen=True)
class MockDevice:
    """A simulated GPU; memory in bytes, power in milliwatts."""

    index: int
    name: str
    uuid: str
    temperature: int
    utilization: int
    memory_used: int
    memory_total: int
    power_usage: int
    compute_mode: int = COMPUTE_MODE_DEFAULT
    persistence_mode: int = FEATURE_ENABLED


def _default_devices() -> list[MockDevice]:
    return [
        MockDevice(
            index=0,
            name="Mock NVIDIA GPU 0",
            uuid="GPU-00000000-0000-0000-0000-000000000000",
            temperature=65,
            utilization=75,
            memory_used=8 * GIB,
            memory_total=16 * GIB,
            power_usage=250,
        ),
        MockDevice(
            index=1,
            name="Mock NVIDIA GPU 1",
            uuid="GPU-11111111-1111-1111-1111-111111111111",
            temperature=60,
            utilization=50,
            memory_used=4 * GIB,
            memory_total=16 * GIB,
            power_usage=200,
        ),
    ]


def _check(device: object) -> MockDevice:
    if not isinstance(device, MockDevice):
        raise NVMLError("invalid device handle")
    return device


class MockNVML:
    """Simulated management library for running without GPU hardware."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._devices: list[MockDevice] = []
        self.initialized = False

    def __enter__(self) -> "MockNVML":
        self.init()
        return self

    def __exit__(self, *exc_info) -> None:
        if self.initialized:
            self.shutdown()

    def init(self) -> None:
        with self._lock:
            if self.initialized:
                return
            log.info("Initializing mock NVML (no real GPU)")
            self._devices = _default_devices()
            self.initialized = True

    def shutdown(self) -> None:
        with self._lock:
            if not self.initialized:
                raise NVMLError("NVML not initialized")
            log.info("Shutting down mock NVML")
            self.initialized = False

    def device_count(self) -> int:
        with self._lock:
            if not self.initialized:
                raise NVMLError("NVML not initialized")
            return len(self._devices)

    def device_by_index(self, index: int) -> MockDevice:
        with self._lock:
            if not self.initialized:
                raise NVMLError("NVML not initialized")
            if not 0 <= index < len(self._devices):
                raise NVMLError(f"invalid device index: {index}")
            return self._devices[index]

    def device_name(self, device: MockDevice) -> str:
        return _check(device).name

    def device_uuid(self, device: MockDevice) -> str:
        return _check(device).uuid

    def device_temperature(self, device: MockDevice) -> int:
        dev = _check(device)
        return dev.temperature + dev.index * 2

    def device_utilization_rates(self, device: MockDevice) -> tuple[int, int]:
        """Return GPU and memory utilization in percent."""
        dev = _check(device)
        memory_util = int(dev.memory_used / dev.memory_total * 100)
        return dev.utilization, memory_util

    def device_memory_info(self, device: MockDevice) -> tuple[int, int, int]:
        """Return used, free and total memory in bytes."""
        dev = _check(device)
        return dev.memory_used, dev.memory_total - dev.memory_used, dev.memory_total

    def device_power_usage(self, device: MockDevice) -> int:
        return _check(device).power_usage

    def device_compute_mode(self, device: MockDevice) -> int:
        """Return the device's compute mode (0 is the default mode)."""
        return _check(device).compute_mode

    def device_persistence_mode(self, device: MockDevice) -> int:
        """Return the device's persistence mode (1 is enabled)."""
        return _check(device).persistence_mode