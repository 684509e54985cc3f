# vllmchill

Building blocks for running a vLLM server on Kubernetes and scaling it down when it is idle.

## Modules

- `vllmchill.cluster`: a small JSON client for the Kubernetes API.
  - `in_cluster_config()` builds a `ClusterConfig` from the service account mounted into a pod. It reads `KUBERNETES_SERVICE_HOST`, `KUBERNETES_SERVICE_PORT`, the token and the CA file.
  - `KubeClient` gets and updates deployments, reads custom resource definitions and creates self-subject access reviews.
  - Failed calls raise `KubeError`, which carries the HTTP status when there is one.
- `vllmchill.rbac`: checks the cluster setup.
  - `get_required_permissions(namespace)` lists every `RequiredPermission` the controller needs.
  - `check_permission(client, perm)` asks the API server about a single permission.
  - `verify_crd_exists(client)` checks that the `models.vllm.sir-alfred.io` CRD is installed and established.
  - `verify_permissions(namespace, client=None)` runs all of these checks. It builds an in-cluster client when none is given, and raises `RBACError` that lists each missing permission.
- `vllmchill.scaling`: `K8sAutoScaler` sets a deployment's replica count.
  - `scale_up()` sets the deployment to `max_replicas` and waits until the ready replicas match.
  - `scale_down()` sets it to `min_replicas`.
  - `start()` runs a background loop. The loop scales down once no activity has been recorded for `scale_down_delay` seconds. `stop()` ends the loop.
  - `ScalingConfig` takes durations in seconds. A zero value selects the default: 300 s delay, 10 s check interval, 1 replica minimum and maximum.
  - `get_status()` returns a `Status` snapshot.
  - Failures raise `ScalingError`.
- `vllmchill.metrics`: `Counter`, `Gauge` and `Histogram` with label values.
  - `MetricsRegistry` holds the proxy's metric set. `render()` writes it in the Prometheus text exposition format.
  - `MetricsRecorder` records requests, model switches, scale operations, XML tool-call parsing, proxy latency, and vLLM startup and shutdown times. It also records the vLLM state (`VLLMState`).
  - A background thread keeps the idle-time gauge current. `MetricsRecorder` is a context manager that stops that thread on exit.
- `vllmchill.logparser`: `parse_kv_cache_info(logs)` extracts the available KV cache memory (GiB and MiB), the block size and the GPU/CPU block counts into a `KVCacheInfo`. `is_valid()` is true when the logs gave either the cache memory or a GPU block count.
- `vllmchill.nvml`: `MockNVML` is an in-memory GPU management library with two simulated devices. Its queries raise `NVMLError`.
- `vllmchill.gpustats`: `GPUStatsHandler` turns a backend's device data into `GPUStats`/`GPU` records.
  - `serve(method)` returns a `Response` with a status, a JSON-ready body and headers.
  - Results are cached for `cache_ttl` seconds, and the `X-Cache` header says `HIT` or `MISS`.
  - Non-GET requests get 405.
  - With no backend, `serve` answers 503.

## Install

```
pip install .
pip install ".[test]"   # with test dependencies
```

## Examples

Verifying permissions and scaling inside a cluster:

```python
from vllmchill.cluster import KubeClient, in_cluster_config
from vllmchill.rbac import verify_permissions
from vllmchill.scaling import K8sAutoScaler, ScalingConfig

client = KubeClient(in_cluster_config())
verify_permissions("vllm", client)

scaler = K8sAutoScaler(client, ScalingConfig(namespace="vllm", deployment="vllm", max_replicas=1))
scaler.start()
scaler.update_activity()
scaler.scale_up()
print(scaler.get_status())
scaler.stop()
```

Recording metrics:

```python
from vllmchill.metrics import MetricsRecorder, MetricsRegistry

with MetricsRecorder(MetricsRegistry()) as recorder:
    recorder.record_request("POST", "/v1/chat/completions", 200, 0.5, 1024, 2048)
    recorder.set_current_model("test-model")
    print(recorder.registry.render())
```

Parsing vLLM logs:

```python
from vllmchill.logparser import parse_kv_cache_info

info = parse_kv_cache_info("Available KV cache memory: 16.5 GiB\n# GPU blocks: 100")
assert info.is_valid()
assert info.available_memory_mib == 16.5 * 1024
```

GPU statistics from the simulated backend:

```python
from vllmchill.gpustats import GPUStatsHandler
from vllmchill.nvml import MockNVML

handler = GPUStatsHandler(MockNVML())
response = handler.serve("GET")
print(response.status, response.headers["X-Cache"], response.body["gpus"][0]["name"])
handler.shutdown()
```

## What it does not do

This is a library, not a running service. It has:

- no command-line program;
- no HTTP server or request proxy, so `GPUStatsHandler.serve` only builds `Response` objects for you to send;
- no binding to real GPU hardware. The only backend included is `MockNVML`. Any other backend must provide the same methods.

## Tests

```
pytest
```