"""Scales a Kubernetes deployment up on demand and down after a quiet period."""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any

from vllmchill.cluster import KubeError

log = logging.getLogger(__name__)

DEFAULT_SCALE_UP_TIMEOUT = 120.0
DEFAULT_CHECK_INTERVAL = 10.0
DEFAULT_SCALE_DOWN_DELAY = 300.0
READY_POLL_INTERVAL = 2.0


class ScalingError(Exception):
    """Raised when a scaling operation fails or times out."""


@dataclass(frozen=True)
class Status:
    """A snapshot of the autoscaler state."""

    is_scaled_up: bool
    is_scaling_up: bool
    last_activity: datetime
    replicas: int


@dataclass(frozen=True)
class ScalingConfig:
    """Autoscaler settings; durations are in seconds, zero selects the default."""

    namespace: str = ""
    deployment: str = ""
    scale_down_delay: float = 0.0
    check_interval: float = 0.0
    min_replicas: int = 0
    max_replicas: int = 0


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AutoScaler(ABC):
    """The operations any autoscaler offers."""

    @abstractmethod
    def update_activity(self) -> None: ...

    @abstractmethod
    def is_active(self) -> bool: ...

    @abstractmethod
    def scale_up(self) -> None: ...

    @abstractmethod
    def scale_down(self) -> None: ...

    @abstractmethod
    def wait_for_scale_up(self, timeout: float) -> None: ...

    @abstractmethod
    def start(self) -> None: ...

    @abstractmethod
    def stop(self) -> None: ...

    @abstractmethod
    def get_status(self) -> Status: ...


class K8sAutoScaler(AutoScaler):
    """Autoscaler that sets the replica count of a Kubernetes deployment."""

    def __init__(self, client: Any, config: ScalingConfig) -> None:
        self.client = client
        self.config = replace(
            config,
            scale_down_delay=config.scale_down_delay or DEFAULT_SCALE_DOWN_DELAY,
            check_interval=config.check_interval or DEFAULT_CHECK_INTERVAL,
            min_replicas=config.min_replicas or 1,
            max_replicas=config.max_replicas or 1,
        )
        self.last_activity = _now()
        self.ready_timeout = DEFAULT_SCALE_UP_TIMEOUT
        self.ready_poll_interval = READY_POLL_INTERVAL
        self._cond = threading.Condition()
        self._op_lock = threading.Lock()
        self._scaling_up = False
        self._replicas = 0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def _idle_seconds(self) -> float:
        return (_now() - self.last_activity).total_seconds()

    def update_activity(self) -> None:
        with self._cond:
            self.last_activity = _now()
        log.debug("[AUTOSCALER] Activity detected at %s", self.last_activity.isoformat())

    def is_active(self) -> bool:
        with self._cond:
            return self._idle_seconds() < self.config.scale_down_delay

    def _target(self) -> str:
        return f"{self.config.namespace}/{self.config.deployment}"

    def _set_replicas(self, replicas: int) -> None:
        namespace, name = self.config.namespace, self.config.deployment
        try:
            deployment = self.client.get_deployment(namespace, name)
        except KubeError as exc:
            raise ScalingError(f"failed to get deployment: {exc}") from exc

        deployment.setdefault("spec", {})["replicas"] = replicas
        try:
            self.client.update_deployment(namespace, name, deployment)
        except KubeError as exc:
            raise ScalingError(f"failed to update deployment: {exc}") from exc

        with self._cond:
            self._replicas = replicas

    def scale_up(self) -> None:
        with self._op_lock:
            with self._cond:
                if self._replicas >= self.config.max_replicas:
                    log.info("[AUTOSCALER] Already at max replicas (%d)", self.config.max_replicas)
                    return
                self._scaling_up = True
            try:
                log.info("[AUTOSCALER] Scaling up deployment %s", self._target())
                self._set_replicas(self.config.max_replicas)
                log.info("[AUTOSCALER] Scaled up to %d replicas", self.config.max_replicas)
                self._wait_for_deployment_ready()
            finally:
                with self._cond:
                    self._scaling_up = False
                    self._cond.notify_all()

    def scale_down(self) -> None:
        with self._op_lock:
            with self._cond:
                if self._replicas <= self.config.min_replicas:
                    log.info("[AUTOSCALER] Already at min replicas (%d)", self.config.min_replicas)
                    return
            log.info("[AUTOSCALER] Scaling down deployment %s", self._target())
            self._set_replicas(self.config.min_replicas)
            log.info("[AUTOSCALER] Scaled down to %d replicas", self.config.min_replicas)

    def wait_for_scale_up(self, timeout: float) -> None:
        with self._cond:
            if not self._cond.wait_for(lambda: not self._scaling_up, timeout):
                raise ScalingError("timeout waiting for scale up")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run_scaling_loop,
            args=(self._stop_event,),
            name="autoscaler",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._thread = None

    def get_status(self) -> Status:
        with self._cond:
            return Status(
                is_scaled_up=self._replicas > self.config.min_replicas,
                is_scaling_up=self._scaling_up,
                last_activity=self.last_activity,
                replicas=self._replicas,
            )

    def _run_scaling_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.config.check_interval):
            self._check_and_scale()
        log.info("[AUTOSCALER] Stopping autoscaling loop")

    def _check_and_scale(self) -> None:
        with self._cond:
            inactive = self._idle_seconds() > self.config.scale_down_delay
            replicas = self._replicas
        if inactive and replicas > self.config.min_replicas:
            log.info(
                "[AUTOSCALER] No activity for %ss, scaling down", self.config.scale_down_delay
            )
            try:
                self.scale_down()
            except ScalingError as exc:
                log.error("[AUTOSCALER] Failed to scale down: %s", exc)

    def _wait_for_deployment_ready(self) -> None:
        namespace, name = self.config.namespace, self.config.deployment
        deadline = time.monotonic() + self.ready_timeout
        while True:
            try:
                deployment = self.client.get_deployment(namespace, name)
            except KubeError as exc:
                raise ScalingError(f"failed to get deployment: {exc}") from exc

            ready = (deployment.get("status") or {}).get("readyReplicas") or 0
            desired = (deployment.get("spec") or {}).get("replicas", 1)
            if ready == desired:
                log.info(
                    "[AUTOSCALER] Deployment %s is ready with %d replicas", self._target(), ready
                )
                return

            log.info("[AUTOSCALER] Waiting for deployment: %d/%d replicas ready", ready, desired)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ScalingError(
                    f"timed out waiting for deployment {self._target()} to become ready"
                )
            time.sleep(min(self.ready_poll_interval, remaining))