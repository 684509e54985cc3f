"""Extraction of KV cache figures from vLLM startup logs."""

from __future__ import annotations

import re
from dataclasses import dataclass

_FLAGS = re.IGNORECASE | re.ASCII

_KV_CACHE_MEMORY = re.compile(r"Available KV cache memory:\s+([\d.]+)\s+(GiB|MiB)", _FLAGS)
_BLOCK_SIZE = re.compile(r"Block size:\s+(\d+)", _FLAGS)
_GPU_BLOCKS = re.compile(r"# GPU blocks:\s+(\d+)", _FLAGS)
_CPU_BLOCKS = re.compile(r"# CPU blocks:\s+(\d+)", _FLAGS)


@dataclass
class KVCacheInfo:
    """KV cache details reported by vLLM; zero where the logs say nothing."""

    available_memory_gib: float = 0.0
    available_memory_mib: float = 0.0
    block_size: int = 0
    num_gpu_blocks: int = 0
    num_cpu_blocks: int = 0

    def is_valid(self) -> bool:
        """True when the logs gave either the cache memory or the GPU block count."""
        return self.available_memory_gib > 0 or self.num_gpu_blocks > 0


def _first_int(pattern: re.Pattern[str], logs: str) -> int:
    match = pattern.search(logs)
    return int(match.group(1)) if match else 0


def parse_kv_cache_info(logs: str) -> KVCacheInfo:
    """Parse the first occurrence of each KV cache line found in ``logs``."""
    info = KVCacheInfo(
        block_size=_first_int(_BLOCK_SIZE, logs),
        num_gpu_blocks=_first_int(_GPU_BLOCKS, logs),
        num_cpu_blocks=_first_int(_CPU_BLOCKS, logs),
    )

    match = _KV_CACHE_MEMORY.search(logs)
    if match:
        try:
            value = float(match.group(1))
        except ValueError:
            value = None
        if value is not None:
            if match.group(2).upper() == "GIB":
                info.available_memory_gib = value
                info.available_memory_mib = value * 1024
            else:
                info.available_memory_mib = value
                info.available_memory_gib = value / 1024

    return info