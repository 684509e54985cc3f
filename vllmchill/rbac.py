"""Checks that the service account holds the permissions the controller needs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from vllmchill.cluster import KubeClient, KubeError, in_cluster_config

CRD_NAME = "models.vllm.sir-alfred.io"


class RBACError(Exception):
    """Raised when the cluster setup does not allow the controller to run."""


@dataclass(frozen=True)
class RequiredPermission:
    """A verb on a resource; an empty namespace means cluster-scoped."""

    api_group: str
    resource: str
    verb: str
    namespace: str = ""


_CLUSTER_RULES = (
    ("apiextensions.k8s.io", "customresourcedefinitions", ("get", "list")),
    ("vllm.sir-alfred.io", "models", ("get", "list")),
)

_NAMESPACED_RULES = (
    ("apps", "deployments", ("get", "list", "create", "update", "patch")),
    ("", "pods", ("list", "delete", "deletecollection")),
    ("", "configmaps", ("get", "create", "update", "patch")),
    ("", "services", ("get", "create", "update", "patch")),
)


def get_required_permissions(namespace: str) -> list[RequiredPermission]:
    """Return every permission the controller requires, in check order."""
    cluster = [
        RequiredPermission(group, resource, verb)
        for group, resource, verbs in _CLUSTER_RULES
        for verb in verbs
    ]
    namespaced = [
        RequiredPermission(group, resource, verb, namespace)
        for group, resource, verbs in _NAMESPACED_RULES
        for verb in verbs
    ]
    return cluster + namespaced


def join(strs: Iterable[str], sep: str) -> str:
    """Join strings with a separator."""
    return sep.join(strs)


def check_permission(client: Any, perm: RequiredPermission) -> bool:
    """Ask the API server whether the current identity may perform ``perm``."""
    attributes = {"verb": perm.verb, "resource": perm.resource}
    if perm.api_group:
        attributes["group"] = perm.api_group
    if perm.namespace:
        attributes["namespace"] = perm.namespace
    review = {
        "apiVersion": "authorization.k8s.io/v1",
        "kind": "SelfSubjectAccessReview",
        "spec": {"resourceAttributes": attributes},
    }
    result = client.create_self_subject_access_review(review)
    return bool((result.get("status") or {}).get("allowed", False))


def verify_crd_exists(client: Any) -> None:
    """Raise RBACError unless the model CRD is installed and established."""
    try:
        crd = client.get_custom_resource_definition(CRD_NAME)
    except KubeError as exc:
        raise RBACError(
            f"VLLMModel CRD not found: {exc}\n\n"
            "Please install the CRD using: kubectl apply -f manifests/crds/vllmmodel.yaml"
        ) from exc

    conditions = (crd.get("status") or {}).get("conditions") or []
    if any(c.get("type") == "Established" and c.get("status") == "True" for c in conditions):
        return
    raise RBACError(
        "VLLMModel CRD exists but is not established\n\n"
        "Please wait for the CRD to be fully initialized"
    )


def _describe(perm: RequiredPermission) -> str:
    scope = f"namespace={perm.namespace}" if perm.namespace else "cluster-scoped"
    return f"  - {perm.verb} {perm.resource}.{perm.api_group} ({scope})"


def verify_permissions(namespace: str, client: Any = None) -> None:
    """Raise RBACError if the CRD is missing or any required permission is denied."""
    if client is None:
        try:
            config = in_cluster_config()
        except KubeError as exc:
            raise RBACError(f"failed to get in-cluster config: {exc}") from exc
        client = KubeClient(config)

    verify_crd_exists(client)

    missing = []
    for perm in get_required_permissions(namespace):
        try:
            allowed = check_permission(client, perm)
        except KubeError as exc:
            raise RBACError(
                f"failed to check permission {perm.api_group}/{perm.resource}:{perm.verb}: {exc}"
            ) from exc
        if not allowed:
            missing.append(_describe(perm))

    if missing:
        raise RBACError(
            f"missing required RBAC permissions:\n{join(missing, chr(10))}\n\n"
            "Please ensure the ServiceAccount has the required permissions "
            "as defined in manifests/ci/rbac.yaml"
        )