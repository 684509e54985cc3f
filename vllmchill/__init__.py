"""Kubernetes client, RBAC checks, deployment autoscaling, metrics, vLLM log parsing and GPU statistics."""

__version__ = "0.1.0"