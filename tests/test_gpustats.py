from datetime import datetime, timezone

import pytest

from vllmchill.gpustats import GPU, GPUStats, GPUStatsHandler, Response
from vllmchill.nvml import MockNVML, NVMLError


class _NoDevices:
    def init(self):
        pass

    def shutdown(self):
        pass

    def device_count(self):
        return 0


class _BrokenDevices(_NoDevices):
    def device_count(self):
        return 2

    def device_by_index(self, index):
        raise NVMLError(f"invalid device index: {index}")


class _FailingInit(_NoDevices):
    def init(self):
        raise NVMLError("driver missing")


@pytest.fixture
def handler():
    h = GPUStatsHandler(MockNVML(), cache_ttl=60.0)
    yield h
    h.shutdown()


def test_handler_initializes_backend(handler):
    assert handler.initialized is True
    assert handler.backend.initialized is True


def test_query_returns_two_gpus(handler):
    stats = handler.query()
    assert [g.index for g in stats.gpus] == [0, 1]
    first, second = stats.gpus
    assert first.name == "Mock NVIDIA GPU 0"
    assert first.uuid == "GPU-00000000-0000-0000-0000-000000000000"
    assert first.temperature == 65
    assert second.temperature == 62
    assert first.utilization == 75.0
    assert first.memory_used == 8192
    assert first.memory_total == 16384
    assert first.memory_util == 50.0
    assert second.memory_util == 25.0
    assert first.power_draw == 0.25
    assert second.power_draw == 0.2


def test_serve_miss_then_hit(handler):
    first = handler.serve("GET")
    assert first.status == 200
    assert first.headers["X-Cache"] == "MISS"
    assert first.headers["X-GPU-Type"] == "mock"
    assert len(first.body["gpus"]) == 2
    second = handler.serve("GET")
    assert second.headers["X-Cache"] == "HIT"
    assert second.body == first.body


def test_zero_ttl_never_hits():
    h = GPUStatsHandler(MockNVML(), cache_ttl=0.0)
    assert h.serve().headers["X-Cache"] == "MISS"
    assert h.serve().headers["X-Cache"] == "MISS"
    h.shutdown()


def test_non_get_method_rejected(handler):
    response = handler.serve("POST")
    assert response.status == 405
    assert response.body == {"error": "Method not allowed"}


def test_without_backend_unavailable():
    h = GPUStatsHandler(None)
    response = h.serve("GET")
    assert response.status == 503
    assert "not available" in response.body["error"]
    with pytest.raises(NVMLError):
        h.query()


def test_shutdown_then_query_fails():
    h = GPUStatsHandler(MockNVML(), cache_ttl=0.0)
    h.shutdown()
    assert h.backend.initialized is False
    with pytest.raises(NVMLError, match="not initialized"):
        h.query()
    response = h.serve()
    assert response.status == 500
    assert response.body["error"].startswith("Failed to query GPU:")


def test_shutdown_twice_is_harmless():
    h = GPUStatsHandler(MockNVML())
    h.shutdown()
    h.shutdown()
    assert h.initialized is False


def test_init_failure_leaves_handler_uninitialized():
    h = GPUStatsHandler(_FailingInit())
    assert h.initialized is False
    with pytest.raises(NVMLError, match="not initialized"):
        h.query()


def test_no_gpus_found():
    h = GPUStatsHandler(_NoDevices())
    with pytest.raises(NVMLError, match="no GPUs found"):
        h.query()


def test_no_queryable_gpus():
    h = GPUStatsHandler(_BrokenDevices(), cache_ttl=0.0)
    with pytest.raises(NVMLError, match="failed to query any GPUs"):
        h.query()
    response = h.serve()
    assert response.status == 500
    assert "failed to query any GPUs" in response.body["error"]


def test_gpu_to_dict_field_names():
    gpu = GPU(index=3, name="card", memory_used=10, temperature=40)
    data = gpu.to_dict()
    assert list(data) == [
        "index", "name", "uuid", "utilization_percent", "memory_used_mb",
        "memory_total_mb", "memory_util_percent", "temperature_c", "power_draw_w",
        "power_limit_w", "fan_speed_percent", "encoder_util_percent",
        "decoder_util_percent",
    ]
    assert data["index"] == 3
    assert data["memory_used_mb"] == 10
    assert data["temperature_c"] == 40


def test_gpustats_to_dict():
    ts = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    stats = GPUStats(timestamp=ts, gpus=[GPU(index=0), GPU(index=1)])
    data = stats.to_dict()
    assert data["timestamp"] == "2024-01-02T03:04:05+00:00"
    assert [g["index"] for g in data["gpus"]] == [0, 1]


def test_response_holds_values():
    response = Response(200, {"a": 1})
    assert response.headers == {}
    assert response.body["a"] == 1