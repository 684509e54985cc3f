import copy
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from vllmchill.cluster import KubeError
from vllmchill.scaling import (
    DEFAULT_CHECK_INTERVAL,
    DEFAULT_SCALE_DOWN_DELAY,
    AutoScaler,
    K8sAutoScaler,
    ScalingConfig,
    ScalingError,
)


class FakeClient:
    def __init__(self, ready=True, gate=None, fail=None):
        self.deployment = {
            "metadata": {"name": "test-deployment"},
            "spec": {"replicas": 0},
            "status": {"readyReplicas": 0},
        }
        self.ready = ready
        self.gate = gate
        self.fail = fail
        self.updates = []

    def get_deployment(self, namespace, name):
        if self.gate is not None:
            self.gate.wait(5)
        if self.fail:
            raise KubeError(self.fail, status=404)
        return copy.deepcopy(self.deployment)

    def update_deployment(self, namespace, name, deployment):
        replicas = deployment["spec"]["replicas"]
        self.updates.append(replicas)
        self.deployment = copy.deepcopy(deployment)
        if self.ready:
            self.deployment["status"]["readyReplicas"] = replicas
        return copy.deepcopy(self.deployment)


def make_scaler(client=None, **overrides):
    settings = dict(namespace="test", deployment="test-deployment", min_replicas=1, max_replicas=3)
    settings.update(overrides)
    return K8sAutoScaler(client if client is not None else FakeClient(), ScalingConfig(**settings))


def wait_until(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def test_defaults_applied():
    scaler = make_scaler()
    assert scaler.config.scale_down_delay == DEFAULT_SCALE_DOWN_DELAY
    assert scaler.config.check_interval == DEFAULT_CHECK_INTERVAL
    assert scaler.config.min_replicas == 1
    assert scaler.config.max_replicas == 3


def test_zero_replicas_default_to_one():
    scaler = K8sAutoScaler(None, ScalingConfig(namespace="test-ns", deployment="test-deployment"))
    assert scaler.config.min_replicas == 1
    assert scaler.config.max_replicas == 1
    assert scaler.config.scale_down_delay == 300.0
    assert scaler.config.check_interval == 10.0


def test_custom_times_kept():
    scaler = make_scaler(scale_down_delay=600.0, check_interval=30.0, min_replicas=2, max_replicas=5)
    assert scaler.config.scale_down_delay == 600.0
    assert scaler.config.check_interval == 30.0
    assert scaler.config.min_replicas == 2
    assert scaler.config.max_replicas == 5


def test_is_an_autoscaler():
    scaler = make_scaler()
    assert isinstance(scaler, AutoScaler)
    scaler.update_activity()
    assert scaler.is_active() is True
    assert scaler.get_status().replicas == 0


def test_update_activity_moves_forward():
    scaler = make_scaler()
    initial = scaler.last_activity
    time.sleep(0.01)
    scaler.update_activity()
    assert scaler.last_activity > initial


@pytest.mark.parametrize(
    "delay, since, expected",
    [(300.0, timedelta(minutes=1), True), (300.0, timedelta(minutes=10), False)],
)
def test_is_active(delay, since, expected):
    scaler = make_scaler(scale_down_delay=delay, max_replicas=1)
    scaler.last_activity = datetime.now(timezone.utc) - since
    assert scaler.is_active() is expected


def test_initial_status():
    status = make_scaler().get_status()
    assert status.is_scaled_up is False
    assert status.is_scaling_up is False
    assert status.replicas == 0


def test_scale_up_sets_max_replicas():
    client = FakeClient()
    scaler = make_scaler(client)
    scaler.scale_up()
    status = scaler.get_status()
    assert status.replicas == 3
    assert status.is_scaled_up is True
    assert status.is_scaling_up is False
    assert client.deployment["spec"]["replicas"] == 3


def test_scale_up_at_max_is_noop():
    client = FakeClient()
    scaler = make_scaler(client)
    scaler.scale_up()
    scaler.scale_up()
    assert client.updates == [3]


def test_scale_down_after_scale_up():
    client = FakeClient()
    scaler = make_scaler(client)
    scaler.scale_up()
    scaler.scale_down()
    assert scaler.get_status().replicas == 1
    assert client.updates == [3, 1]


def test_scale_down_at_min_is_noop():
    client = FakeClient()
    scaler = make_scaler(client)
    scaler.scale_down()
    assert client.updates == []


def test_scale_up_get_failure():
    scaler = make_scaler(FakeClient(fail="deployments not found"))
    with pytest.raises(ScalingError, match="failed to get deployment: deployments not found"):
        scaler.scale_up()
    assert scaler.get_status().is_scaling_up is False


def test_scale_up_ready_timeout():
    scaler = make_scaler(FakeClient(ready=False))
    scaler.ready_timeout = 0.05
    scaler.ready_poll_interval = 0.01
    with pytest.raises(ScalingError, match="timed out"):
        scaler.scale_up()
    assert scaler.get_status().is_scaling_up is False


def test_wait_for_scale_up_when_idle():
    scaler = make_scaler()
    scaler.wait_for_scale_up(0.01)
    assert scaler.get_status().is_scaling_up is False


def test_wait_for_scale_up_times_out_then_completes():
    gate = threading.Event()
    scaler = make_scaler(FakeClient(gate=gate))
    worker = threading.Thread(target=scaler.scale_up)
    worker.start()
    try:
        assert wait_until(lambda: scaler.get_status().is_scaling_up)
        with pytest.raises(ScalingError, match="timeout waiting for scale up"):
            scaler.wait_for_scale_up(0.05)
    finally:
        gate.set()
    scaler.wait_for_scale_up(5)
    worker.join(5)
    assert scaler.get_status().replicas == 3


def test_loop_scales_down_when_idle():
    client = FakeClient()
    scaler = make_scaler(client, check_interval=0.01, scale_down_delay=0.05)
    scaler.scale_up()
    scaler.last_activity = datetime.now(timezone.utc) - timedelta(seconds=10)
    scaler.start()
    try:
        assert wait_until(lambda: scaler.get_status().replicas == 1)
    finally:
        scaler.stop()
    assert client.updates == [3, 1]


def test_loop_keeps_active_deployment():
    client = FakeClient()
    scaler = make_scaler(client, check_interval=0.01, scale_down_delay=60.0)
    scaler.scale_up()
    scaler.start()
    time.sleep(0.05)
    scaler.stop()
    assert scaler.get_status().replicas == 3
    assert client.updates == [3]