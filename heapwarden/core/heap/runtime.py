from __future__ import annotations

import gc
import os
import time
from typing import Any, Dict, Protocol

from heapwarden.core.errors import InitializationFailure, ParameterRejected
from heapwarden.core.heap.models import HeapSnapshot
from heapwarden.core.units import MB, percent


_GC_THRESHOLD_SLOTS = {
    "young_generation_threshold": 0,
    "gc_interval_hint": 1,
    "old_generation_interval": 2,
}


class HeapRuntime(Protocol):
    """
    What the tuner needs from the host runtime. `apply` raises
    ParameterRejected for anything it will not or cannot set.
    """

    def heap_snapshot(self) -> HeapSnapshot: ...

    def apply(self, name: str, value: int) -> None: ...

    def current_ceiling_mb(self) -> int: ...

    def collect(self, generation: int = 2) -> int: ...

    def describe(self) -> Dict[str, Any]: ...


class ProcessHeapRuntime:
    """
    CPython process as the managed runtime:
    - usage: resident set size via psutil, measured against the ceiling
    - no heap regions; host RAM and swap are reported by describe() only
    - heap ceiling: soft limit kept here; optionally enforced as RLIMIT_AS (POSIX only)
    - generational sizing / collection interval: gc.set_threshold slots
    """

    def __init__(self, *, initial_ceiling_mb: int = 512, enforce_ceiling: bool = False):
        try:
            import psutil  # type: ignore

            self._psutil = psutil
            self._proc = psutil.Process(os.getpid())
        except Exception as e:  # noqa: BLE001
            raise InitializationFailure("psutil is required to read process memory.", error=str(e)) from e
        self.enforce_ceiling = bool(enforce_ceiling)
        self._ceiling_bytes = int(initial_ceiling_mb) * MB

    def heap_snapshot(self) -> HeapSnapshot:
        mi = self._proc.memory_info()
        used = int(mi.rss)
        limit = int(self._ceiling_bytes)
        return HeapSnapshot(sampled_at=time.time(), limit_bytes=limit, used_bytes=used, available_bytes=max(0, limit - used))

    def apply(self, name: str, value: int) -> None:
        value = int(value)
        if value <= 0:
            raise ParameterRejected(parameter=name, value=value, reason="must be positive")
        if name == "heap_ceiling_mb":
            self._apply_ceiling(value)
            return
        slot = _GC_THRESHOLD_SLOTS.get(name)
        if slot is None:
            raise ParameterRejected(parameter=name, value=value, reason="unsupported parameter")
        thresholds = list(gc.get_threshold())
        thresholds[slot] = value
        try:
            gc.set_threshold(*thresholds)
        except (ValueError, TypeError) as e:
            raise ParameterRejected(parameter=name, value=value, reason=str(e)) from e

    def current_ceiling_mb(self) -> int:
        return int(self._ceiling_bytes // MB)

    def collect(self, generation: int = 2) -> int:
        return int(gc.collect(max(0, min(2, int(generation)))))

    def describe(self) -> Dict[str, Any]:
        return {
            "backend": "cpython-process",
            "gc_thresholds": list(gc.get_threshold()),
            "gc_counts": list(gc.get_count()),
            "ceiling_mb": self.current_ceiling_mb(),
            "enforce_ceiling": self.enforce_ceiling,
            "host": self._host_memory(),
        }

    def _host_memory(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"memory": None, "swap": None}
        try:
            vm = self._psutil.virtual_memory()
            out["memory"] = _usage(int(vm.total), int(vm.total - vm.available))
        except Exception:
            pass
        try:
            sw = self._psutil.swap_memory()
            if int(sw.total) > 0:
                out["swap"] = _usage(int(sw.total), int(sw.used))
        except Exception:
            pass
        return out

    def _apply_ceiling(self, limit_mb: int) -> None:
        limit_bytes = int(limit_mb) * MB
        if self.enforce_ceiling:
            try:
                import resource  # POSIX only
            except ImportError as e:
                raise ParameterRejected(parameter="heap_ceiling_mb", value=limit_mb, reason="address-space limits unsupported on this platform") from e
            vms = int(self._proc.memory_info().vms)
            if limit_bytes < vms:
                # below current address space every new allocation would fail
                raise ParameterRejected(parameter="heap_ceiling_mb", value=limit_mb, reason=f"below current address space ({vms // MB}MB)")
            try:
                _soft, hard = resource.getrlimit(resource.RLIMIT_AS)
                resource.setrlimit(resource.RLIMIT_AS, (limit_bytes, hard))
            except (ValueError, OSError) as e:
                raise ParameterRejected(parameter="heap_ceiling_mb", value=limit_mb, reason=str(e)) from e
        self._ceiling_bytes = limit_bytes


def _usage(total: int, used: int) -> Dict[str, Any]:
    return {"total_bytes": total, "used_bytes": used, "usage_percent": percent(used, total)}
