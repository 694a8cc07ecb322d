"""
Runtime heap tuner.

Reads process memory against a managed heap ceiling, turns the reading into
prioritized advice, and applies bounded parameter changes through a
HeapRuntime backend.
"""

from heapwarden.core.heap.models import HeapParameters, HeapTunerConfig
from heapwarden.core.heap.runtime import HeapRuntime, ProcessHeapRuntime
from heapwarden.core.heap.tuner import RuntimeHeapTuner

__all__ = ["HeapParameters", "HeapRuntime", "HeapTunerConfig", "ProcessHeapRuntime", "RuntimeHeapTuner"]
