[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vllmchill"
version = "0.1.0"
description = "Kubernetes helpers for scale-to-zero vLLM deployments: RBAC checks, deployment autoscaling, Prometheus-style metrics, KV cache log parsing and GPU statistics"
requires-python = ">=3.10"
keywords = ["vllm", "kubernetes", "autoscaling", "rbac", "prometheus", "gpu", "metrics"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
    "Topic :: System :: Monitoring",
    "Typing :: Typed",
]
dependencies = [
    "requests",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[tool.hatch.build.targets.wheel]
packages = ["vllmchill"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
