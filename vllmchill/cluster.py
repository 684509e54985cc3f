"""A small Kubernetes API client covering the calls the controller needs."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import quote

import requests

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")
TOKEN_PATH = SERVICE_ACCOUNT_DIR / "token"
CA_PATH = SERVICE_ACCOUNT_DIR / "ca.crt"


class KubeError(Exception):
    """Raised when the Kubernetes API cannot be reached or rejects a call."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass(frozen=True)
class ClusterConfig:
    """Connection settings for an API server."""

    host: str
    token: str = ""
    ca_path: str | None = None
    timeout: float = 30.0

    @property
    def verify(self) -> str | bool:
        return self.ca_path if self.ca_path else True


def in_cluster_config(
    environ: Mapping[str, str] | None = None,
    token_path: str | os.PathLike[str] = TOKEN_PATH,
    ca_path: str | os.PathLike[str] = CA_PATH,
) -> ClusterConfig:
    """Build a configuration from the service account mounted into a pod."""
    env = os.environ if environ is None else environ
    host = env.get("KUBERNETES_SERVICE_HOST", "")
    port = env.get("KUBERNETES_SERVICE_PORT", "")
    if not host or not port:
        raise KubeError(
            "unable to load in-cluster configuration, "
            "KUBERNETES_SERVICE_HOST and KUBERNETES_SERVICE_PORT must be defined"
        )
    try:
        token = Path(token_path).read_text().strip()
    except OSError as exc:
        raise KubeError(f"failed to read service account token: {exc}") from exc

    ca_file = Path(ca_path)
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    return ClusterConfig(
        host=f"https://{host}:{port}",
        token=token,
        ca_path=str(ca_file) if ca_file.is_file() else None,
    )


def _error_reason(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text.strip() or response.reason or ""


class KubeClient:
    """JSON client for the handful of API resources used here."""

    def __init__(self, config: ClusterConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self._session = session if session is not None else requests.Session()
        self._base = config.host.rstrip("/")

    def _request(self, method: str, path: str, body: Any = None) -> dict[str, Any]:
        headers = {"Accept": "application/json"}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        try:
            response = self._session.request(
                method,
                self._base + path,
                json=body,
                headers=headers,
                verify=self.config.verify,
                timeout=self.config.timeout,
            )
        except requests.RequestException as exc:
            raise KubeError(f"{method} {path}: {exc}") from exc
        if not response.ok:
            raise KubeError(
                f"{method} {path}: {response.status_code} {_error_reason(response)}".rstrip(),
                status=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise KubeError(f"{method} {path}: invalid JSON response") from exc

    @staticmethod
    def _deployment_path(namespace: str, name: str) -> str:
        return (
            f"/apis/apps/v1/namespaces/{quote(namespace, safe='')}"
            f"/deployments/{quote(name, safe='')}"
        )

    def get_deployment(self, namespace: str, name: str) -> dict[str, Any]:
        return self._request("GET", self._deployment_path(namespace, name))

    def update_deployment(self, namespace: str, name: str, deployment: dict[str, Any]) -> dict[str, Any]:
        return self._request("PUT", self._deployment_path(namespace, name), deployment)

    def get_custom_resource_definition(self, name: str) -> dict[str, Any]:
        return self._request(
            "GET",
            f"/apis/apiextensions.k8s.io/v1/customresourcedefinitions/{quote(name, safe='')}",
        )

    def create_self_subject_access_review(self, review: dict[str, Any]) -> dict[str, Any]:
        return self._request(
            "POST", "/apis/authorization.k8s.io/v1/selfsubjectaccessreviews", review
        )