from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from heapwarden.core.errors import ParameterRejected
from heapwarden.core.heap.advice import advise, count_by_priority
from heapwarden.core.heap.models import AdvicePriority, HeapParameters, HeapSnapshot, HeapTunerConfig, OptimizationRun, TuningAdvice
from heapwarden.core.heap.runtime import HeapRuntime, ProcessHeapRuntime


MAX_SETTLE_SECONDS = 5.0


class RuntimeHeapTuner:
    """
    Runtime heap tuner:
    - baseline parameter set at startup (rejections logged and skipped)
    - bounded heap-ceiling adjustments with read-back confirmation
    - advice computed fresh from every snapshot
    - single-flight optimization cycles (snapshot -> adjust -> settle -> snapshot)
    """

    def __init__(
        self,
        *,
        cfg: HeapTunerConfig,
        runtime: Optional[HeapRuntime] = None,
        logger=None,
        error_reporter: Any = None,
        now: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.cfg = cfg
        if runtime is None:
            runtime = ProcessHeapRuntime(initial_ceiling_mb=int(cfg.baseline.heap_ceiling_mb or 512), enforce_ceiling=bool(cfg.enforce_ceiling))
        self.runtime = runtime
        self.logger = logger
        self.error_reporter = error_reporter
        self._now = now
        self._sleep = sleep
        self._monotonic = monotonic

        self._lock = threading.Lock()
        self._cycle_guard = threading.Lock()
        self._applied: Dict[str, int] = {}
        self._current_ceiling_mb = int(runtime.current_ceiling_mb())
        self._initialized = False
        self._last_run: Optional[OptimizationRun] = None
        self._original = runtime.describe()

    # ---- lifecycle ----
    def initialize(self) -> List[str]:
        applied, rejected = self._apply_parameters(self.cfg.baseline, trace_id="heap-init")
        with self._lock:
            self._initialized = True
        if self.logger is not None:
            self.logger.info(f"Heap tuner baseline applied: {', '.join(applied) or 'none'}" + (f" (rejected: {', '.join(rejected)})" if rejected else ""))
        return applied

    @property
    def initialized(self) -> bool:
        with self._lock:
            return bool(self._initialized)

    @property
    def current_ceiling_mb(self) -> int:
        with self._lock:
            return int(self._current_ceiling_mb)

    @property
    def applied_parameters(self) -> List[str]:
        with self._lock:
            return [f"{k}={v}" for k, v in self._applied.items()]

    @property
    def last_run(self) -> Optional[OptimizationRun]:
        with self._lock:
            return self._last_run

    # ---- operations ----
    def adjust_heap_ceiling(self, new_limit_mb: Any) -> bool:
        try:
            requested = int(round(float(new_limit_mb)))
        except (TypeError, ValueError):
            self._warn(f"Heap ceiling request rejected (not a number): {new_limit_mb!r}")
            return False
        if requested <= 0:
            self._warn(f"Heap ceiling request rejected (must be positive): {requested}")
            return False
        target = max(int(self.cfg.min_ceiling_mb), min(int(self.cfg.max_ceiling_mb), requested))
        if target != requested:
            self._warn(f"Heap ceiling {requested}MB clamped to {target}MB (bounds {self.cfg.min_ceiling_mb}-{self.cfg.max_ceiling_mb}MB).")
        if not self._apply_one("heap_ceiling_mb", target, trace_id="heap-ceiling"):
            return False
        actual = int(self.runtime.current_ceiling_mb())
        if actual != target:
            self._warn(f"Runtime reports heap ceiling {actual}MB after requesting {target}MB.")
            return False
        if self.logger is not None:
            self.logger.info(f"Heap ceiling set to {target}MB")
        return True

    def get_heap_snapshot(self) -> HeapSnapshot:
        return self.runtime.heap_snapshot()

    def get_tuning_advice(self, snapshot: Optional[HeapSnapshot] = None) -> List[TuningAdvice]:
        return advise(self.cfg, snapshot=snapshot if snapshot is not None else self.get_heap_snapshot())

    def run_optimization_cycle(self) -> OptimizationRun:
        started_at = self._now()
        if not self._cycle_guard.acquire(blocking=False):
            if self.logger is not None:
                self.logger.info("Optimization cycle already running; skipping.")
            return OptimizationRun(started_at=started_at, status="already_running", success=False, error="Optimization cycle already running.")
        t0 = self._monotonic()
        run = OptimizationRun(started_at=started_at)
        try:
            run.before = self.get_heap_snapshot()
            if run.before.used_percent > float(self.cfg.optimization_trigger_percent):
                current = self.current_ceiling_mb
                target = min(int(self.cfg.optimization_max_ceiling_mb), int(round(current * float(self.cfg.optimization_growth_factor))))
                if target > current:
                    if self.adjust_heap_ceiling(target):
                        run.applied_parameters.append(f"heap_ceiling_mb={self.current_ceiling_mb}")
                    else:
                        run.rejected_parameters.append(f"heap_ceiling_mb={target}")
            applied, rejected = self._apply_parameters(self.cfg.supplementary, trace_id="heap-cycle")
            run.applied_parameters.extend(applied)
            run.rejected_parameters.extend(rejected)

            settle = min(MAX_SETTLE_SECONDS, max(0.0, float(self.cfg.settle_seconds)))
            if settle > 0:
                self._sleep(settle)

            run.after = self.get_heap_snapshot()
            run.advice_after = self.get_tuning_advice(run.after)
        except Exception as e:  # noqa: BLE001
            run.success = False
            run.status = "failed"
            run.error = str(e)
            if self.logger is not None:
                self.logger.error(f"Optimization cycle failed: {e}")
            if self.error_reporter is not None:
                self.error_reporter.report_exception(e, trace_id="heap-cycle", subsystem="heap_tuner")
        finally:
            run.duration_ms = int(round((self._monotonic() - t0) * 1000))
            with self._lock:
                self._last_run = run
            self._cycle_guard.release()
        return run

    def reset_to_baseline(self) -> bool:
        """
        Best effort: some parameters cannot be taken back within one process
        lifetime (an enforced address-space limit cannot be raised above its
        hard limit, for instance). Returns True only when every baseline
        parameter was accepted.
        """
        _applied, rejected = self._apply_parameters(self.cfg.baseline, trace_id="heap-reset")
        with self._lock:
            baseline_names = {name for name, _v in self.cfg.baseline.items()}
            self._applied = {k: v for k, v in self._applied.items() if k in baseline_names}
        if rejected:
            self._warn(f"Reset to baseline incomplete; rejected: {', '.join(rejected)}")
            return False
        if self.logger is not None:
            self.logger.info("Heap parameters reset to baseline.")
        return True

    def force_collection(self, generation: int = 2) -> Dict[str, Any]:
        generation = max(0, min(2, int(generation)))
        t0 = self._monotonic()
        before = self.get_heap_snapshot()
        collected = self.runtime.collect(generation)
        after = self.get_heap_snapshot()
        return {
            "generation": generation,
            "collected_objects": int(collected),
            "duration_ms": int(round((self._monotonic() - t0) * 1000)),
            "used_bytes_before": before.used_bytes,
            "used_bytes_after": after.used_bytes,
            "freed_bytes": max(0, before.used_bytes - after.used_bytes),
        }

    def get_optimization_report(self) -> Dict[str, Any]:
        snapshot = self.get_heap_snapshot()
        advice = self.get_tuning_advice(snapshot)
        last = self.last_run
        return {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "heap": snapshot.public_dict(),
            "runtime": self.runtime.describe(),
            "optimization": {
                "initialized": self.initialized,
                "current_ceiling_mb": self.current_ceiling_mb,
                "applied_parameters": self.applied_parameters,
                "baseline": self.cfg.baseline.model_dump(exclude_none=True),
                "original": dict(self._original),
                "last_run": last.public_dict() if last is not None else None,
            },
            "advice": [a.model_dump() for a in advice],
            "summary": {
                "total_advice": len(advice),
                "critical_advice": count_by_priority(advice, AdvicePriority.CRITICAL),
                "high_priority_advice": count_by_priority(advice, AdvicePriority.HIGH),
            },
        }

    # ---- internals ----
    def _apply_parameters(self, params: HeapParameters, *, trace_id: str) -> Tuple[List[str], List[str]]:
        applied: List[str] = []
        rejected: List[str] = []
        for name, value in params.items():
            if name == "heap_ceiling_mb":
                value = max(int(self.cfg.min_ceiling_mb), min(int(self.cfg.max_ceiling_mb), int(value)))
            if self._apply_one(name, value, trace_id=trace_id):
                applied.append(f"{name}={value}")
            else:
                rejected.append(f"{name}={value}")
        return applied, rejected

    def _apply_one(self, name: str, value: int, *, trace_id: str) -> bool:
        try:
            self.runtime.apply(name, int(value))
        except ParameterRejected as e:
            self._reject(name, value, e, trace_id=trace_id)
            return False
        except Exception as e:  # noqa: BLE001
            err = ParameterRejected(parameter=name, value=value, reason=str(e))
            self._reject(name, value, err, trace_id=trace_id, internal_exc=e)
            return False
        with self._lock:
            self._applied[name] = int(value)
            if name == "heap_ceiling_mb":
                self._current_ceiling_mb = int(self.runtime.current_ceiling_mb())
        return True

    def _reject(self, name: str, value: int, err: ParameterRejected, *, trace_id: str, internal_exc: Optional[BaseException] = None) -> None:
        reason = err.context.get("reason") if isinstance(err.context, dict) else None
        self._warn(f"Parameter {name}={value} rejected by runtime (skipped): {reason or err.user_message}")
        if self.error_reporter is not None:
            self.error_reporter.write_error(err, trace_id=trace_id, subsystem="heap_tuner", internal_exc=internal_exc)

    def _warn(self, msg: str) -> None:
        if self.logger is not None:
            self.logger.warning(msg)
