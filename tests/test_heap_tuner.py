from __future__ import annotations

import gc
import threading
from types import SimpleNamespace

import pytest

from heapwarden.core.errors import ParameterRejected
from heapwarden.core.heap.advice import advise
from heapwarden.core.heap.models import AdvicePriority, HeapParameters, HeapRegion, HeapTunerConfig
from heapwarden.core.heap.runtime import ProcessHeapRuntime
from heapwarden.core.heap.tuner import RuntimeHeapTuner
from tests.helpers.fakes import FakeHeapRuntime


def _priorities(advice):
    return [a.priority for a in advice]


def test_advice_critical_at_95_percent():
    rt = FakeHeapRuntime(used_percent=95)
    advice = advise(HeapTunerConfig(), snapshot=rt.heap_snapshot())
    assert _priorities(advice).count(AdvicePriority.CRITICAL) == 1
    assert advice[0].category == "HEAP_USAGE"
    assert advice[0].recommended_action == "increase-heap-limit"


def test_advice_high_between_thresholds():
    rt = FakeHeapRuntime(used_percent=85)
    advice = advise(HeapTunerConfig(), snapshot=rt.heap_snapshot())
    assert _priorities(advice) == [AdvicePriority.HIGH]
    assert advice[0].recommended_action == "monitor-usage"


def test_no_usage_advice_at_70_percent():
    rt = FakeHeapRuntime(used_percent=70)
    advice = advise(HeapTunerConfig(), snapshot=rt.heap_snapshot())
    assert AdvicePriority.CRITICAL not in _priorities(advice)
    assert AdvicePriority.HIGH not in _priorities(advice)


def test_region_pressure_advice():
    rt = FakeHeapRuntime(used_percent=10, regions=[HeapRegion(name="swap", size_bytes=100, used_bytes=96, usage_percent=96.0)])
    advice = advise(HeapTunerConfig(), snapshot=rt.heap_snapshot())
    assert [(a.priority, a.category) for a in advice] == [(AdvicePriority.HIGH, "REGION_PRESSURE")]
    assert "swap" in advice[0].message


@pytest.mark.parametrize("ceiling,action", [(128, "increase-heap-limit"), (3000, "decrease-heap-limit")])
def test_ceiling_advice_outside_band(ceiling, action):
    rt = FakeHeapRuntime(ceiling_mb=ceiling, used_percent=10)
    advice = advise(HeapTunerConfig(), snapshot=rt.heap_snapshot())
    assert [(a.priority, a.category, a.recommended_action) for a in advice] == [(AdvicePriority.MEDIUM, "HEAP_LIMIT", action)]


def test_initialize_applies_baseline(tuner, fake_runtime):
    applied = tuner.initialize()
    assert tuner.initialized is True
    assert "heap_ceiling_mb=512" in applied
    assert fake_runtime.applied_names() == ["heap_ceiling_mb", "young_generation_threshold", "gc_interval_hint", "old_generation_interval"]


def test_initialize_skips_rejected_parameters(logger, error_reporter):
    rt = FakeHeapRuntime(reject=("old_generation_interval",))
    t = RuntimeHeapTuner(cfg=HeapTunerConfig(settle_seconds=0.0), runtime=rt, logger=logger, error_reporter=error_reporter)
    applied = t.initialize()
    assert t.initialized is True
    assert len(applied) == 3
    assert not any(a.startswith("old_generation_interval") for a in applied)
    assert any("old_generation_interval" in m for m in logger.messages("warning"))
    assert error_reporter.tail(1)[0]["error_code"] == "parameter_rejected"


def test_adjust_heap_ceiling_within_bounds(tuner, fake_runtime):
    assert tuner.adjust_heap_ceiling(1024) is True
    assert tuner.current_ceiling_mb == 1024
    assert fake_runtime.ceiling_mb == 1024


@pytest.mark.parametrize("requested,expected", [(64, 128), (10_000, 4096)])
def test_adjust_heap_ceiling_clamps(tuner, fake_runtime, logger, requested, expected):
    assert tuner.adjust_heap_ceiling(requested) is True
    assert tuner.current_ceiling_mb == expected
    assert any("clamped" in m for m in logger.messages("warning"))


@pytest.mark.parametrize("bad", ["abc", None, 0, -5])
def test_adjust_heap_ceiling_rejects_invalid(tuner, fake_runtime, bad):
    assert tuner.adjust_heap_ceiling(bad) is False
    assert fake_runtime.applied == []
    assert tuner.current_ceiling_mb == 512


def test_adjust_heap_ceiling_false_when_runtime_rejects(logger):
    rt = FakeHeapRuntime(reject=("heap_ceiling_mb",))
    t = RuntimeHeapTuner(cfg=HeapTunerConfig(settle_seconds=0.0), runtime=rt, logger=logger)
    assert t.adjust_heap_ceiling(1024) is False
    assert t.current_ceiling_mb == 512


def test_adjust_heap_ceiling_false_when_read_back_differs(logger):
    rt = FakeHeapRuntime(ignore_ceiling=True)
    t = RuntimeHeapTuner(cfg=HeapTunerConfig(settle_seconds=0.0), runtime=rt, logger=logger)
    assert t.adjust_heap_ceiling(1024) is False
    assert any("reports heap ceiling" in m for m in logger.messages("warning"))


def test_cycle_raises_ceiling_when_usage_above_trigger():
    rt = FakeHeapRuntime(ceiling_mb=512, used_percent=92)
    t = RuntimeHeapTuner(cfg=HeapTunerConfig(settle_seconds=0.0), runtime=rt)
    run = t.run_optimization_cycle()

    assert run.status == "completed"
    assert run.success is True
    assert run.before.used_percent == pytest.approx(92.0, abs=0.01)
    assert run.after.limit_mb == 768
    assert run.after.used_percent < run.before.used_percent
    assert "heap_ceiling_mb=768" in run.applied_parameters
    assert "young_generation_threshold=500" in run.applied_parameters
    assert "gc_interval_hint=5" in run.applied_parameters
    assert t.last_run is run


def test_cycle_growth_is_capped():
    rt = FakeHeapRuntime(ceiling_mb=800, used_percent=95)
    t = RuntimeHeapTuner(cfg=HeapTunerConfig(settle_seconds=0.0), runtime=rt)
    run = t.run_optimization_cycle()
    assert t.current_ceiling_mb == 1024
    assert "heap_ceiling_mb=1024" in run.applied_parameters


def test_cycle_at_cap_does_not_touch_ceiling():
    rt = FakeHeapRuntime(ceiling_mb=1024, used_percent=95)
    t = RuntimeHeapTuner(cfg=HeapTunerConfig(settle_seconds=0.0), runtime=rt)
    t.run_optimization_cycle()
    assert "heap_ceiling_mb" not in rt.applied_names()


def test_cycle_below_trigger_only_applies_supplementary(tuner, fake_runtime):
    run = tuner.run_optimization_cycle()
    assert run.success is True
    assert fake_runtime.applied_names() == ["young_generation_threshold", "gc_interval_hint"]
    assert run.after.limit_mb == 512


def test_cycle_records_rejected_supplementary_parameters():
    rt = FakeHeapRuntime(reject=("gc_interval_hint",))
    t = RuntimeHeapTuner(cfg=HeapTunerConfig(settle_seconds=0.0), runtime=rt)
    run = t.run_optimization_cycle()
    assert run.success is True
    assert run.rejected_parameters == ["gc_interval_hint=5"]


def test_cycle_waits_settle_time():
    slept = []
    t = RuntimeHeapTuner(cfg=HeapTunerConfig(settle_seconds=1.5), runtime=FakeHeapRuntime(), sleep=slept.append)
    t.run_optimization_cycle()
    assert slept == [1.5]


def test_concurrent_cycles_are_single_flight():
    entered = threading.Event()
    release = threading.Event()

    def blocking_sleep(_seconds: float) -> None:
        entered.set()
        release.wait(5.0)

    rt = FakeHeapRuntime(ceiling_mb=512, used_percent=92)
    t = RuntimeHeapTuner(cfg=HeapTunerConfig(settle_seconds=1.0), runtime=rt, sleep=blocking_sleep)
    results = []
    worker = threading.Thread(target=lambda: results.append(t.run_optimization_cycle()))
    worker.start()
    try:
        assert entered.wait(5.0)
        second = t.run_optimization_cycle()
        assert second.status == "already_running"
        assert second.success is False
    finally:
        release.set()
        worker.join(5.0)

    assert results[0].status == "completed"
    assert rt.applied_names().count("heap_ceiling_mb") == 1
    assert t.run_optimization_cycle().status == "completed"


def test_cycle_failure_is_reported(logger, error_reporter):
    class BrokenRuntime(FakeHeapRuntime):
        def heap_snapshot(self):
            raise RuntimeError("memory info unavailable")

    t = RuntimeHeapTuner(cfg=HeapTunerConfig(settle_seconds=0.0), runtime=BrokenRuntime(), logger=logger, error_reporter=error_reporter)
    run = t.run_optimization_cycle()
    assert run.status == "failed"
    assert run.success is False
    assert "memory info unavailable" in run.error
    assert error_reporter.tail(1)[0]["subsystem"] == "heap_tuner"
    assert t.run_optimization_cycle().status == "failed"


def test_reset_to_baseline(tuner, fake_runtime):
    tuner.initialize()
    tuner.adjust_heap_ceiling(2048)
    tuner.run_optimization_cycle()
    assert tuner.reset_to_baseline() is True
    assert tuner.current_ceiling_mb == 512
    assert sorted(tuner.applied_parameters) == sorted(["heap_ceiling_mb=512", "young_generation_threshold=700", "gc_interval_hint=10", "old_generation_interval=10"])


def test_reset_to_baseline_reports_rejections():
    t = RuntimeHeapTuner(cfg=HeapTunerConfig(settle_seconds=0.0), runtime=FakeHeapRuntime(reject=("young_generation_threshold",)))
    assert t.reset_to_baseline() is False


def test_force_collection(tuner, fake_runtime):
    out = tuner.force_collection(5)
    assert fake_runtime.collections == [2]
    assert out["generation"] == 2
    assert out["collected_objects"] == 3
    assert out["freed_bytes"] == 0


def test_optimization_report_summary():
    rt = FakeHeapRuntime(ceiling_mb=128, used_percent=95)
    t = RuntimeHeapTuner(cfg=HeapTunerConfig(settle_seconds=0.0), runtime=rt)
    report = t.get_optimization_report()
    assert report["summary"] == {"total_advice": 2, "critical_advice": 1, "high_priority_advice": 0}
    assert report["heap"]["limit"] == "128 MB"
    assert report["optimization"]["last_run"] is None
    assert report["runtime"]["backend"] == "fake"


def test_process_runtime_applies_gc_thresholds():
    saved = gc.get_threshold()
    try:
        rt = ProcessHeapRuntime(initial_ceiling_mb=512)
        rt.apply("young_generation_threshold", 900)
        assert gc.get_threshold()[0] == 900
        rt.apply("old_generation_interval", 12)
        assert gc.get_threshold()[2] == 12
        with pytest.raises(ParameterRejected):
            rt.apply("stack_size_kb", 1024)
        with pytest.raises(ParameterRejected):
            rt.apply("gc_interval_hint", 0)
    finally:
        gc.set_threshold(*saved)


def test_process_runtime_snapshot_and_soft_ceiling():
    rt = ProcessHeapRuntime(initial_ceiling_mb=512)
    snap = rt.heap_snapshot()
    assert snap.limit_bytes == 512 * 1024 * 1024
    assert snap.used_bytes > 0
    assert snap.regions == []
    rt.apply("heap_ceiling_mb", 1024)
    assert rt.current_ceiling_mb() == 1024
    assert rt.describe()["enforce_ceiling"] is False


def test_process_runtime_keeps_host_pressure_out_of_advice():
    mb = 1024 * 1024
    rt = ProcessHeapRuntime(initial_ceiling_mb=4096)
    rt._proc = SimpleNamespace(memory_info=lambda: SimpleNamespace(rss=56 * mb, vms=200 * mb))
    rt._psutil = SimpleNamespace(
        virtual_memory=lambda: SimpleNamespace(total=100, available=1),
        swap_memory=lambda: SimpleNamespace(total=100, used=99),
    )

    snap = rt.heap_snapshot()
    assert snap.regions == []
    assert snap.used_percent < 5
    cfg = HeapTunerConfig(max_ceiling_mb=8192, high_ceiling_mb=8192)
    assert advise(cfg, snapshot=snap) == []

    host = rt.describe()["host"]
    assert host["swap"]["usage_percent"] == 99.0
    assert host["memory"]["usage_percent"] == 99.0


def test_process_runtime_host_block_without_swap():
    rt = ProcessHeapRuntime(initial_ceiling_mb=512)
    rt._psutil = SimpleNamespace(
        virtual_memory=lambda: SimpleNamespace(total=1000, available=750),
        swap_memory=lambda: SimpleNamespace(total=0, used=0),
    )
    assert rt.describe()["host"] == {"memory": {"total_bytes": 1000, "used_bytes": 250, "usage_percent": 25.0}, "swap": None}


@pytest.mark.parametrize(
    "overrides",
    [
        {"optimization_max_ceiling_mb": 8192},
        {"low_ceiling_mb": 2048, "high_ceiling_mb": 2048},
        {"low_ceiling_mb": 4000, "high_ceiling_mb": 1000},
        {"min_ceiling_mb": 4096, "max_ceiling_mb": 128},
    ],
)
def test_tuner_config_rejects_contradictory_bounds(overrides):
    with pytest.raises(ValueError):
        HeapTunerConfig(**overrides)


def test_tuner_config_accepts_consistent_custom_bounds():
    cfg = HeapTunerConfig(max_ceiling_mb=8192, optimization_max_ceiling_mb=8192, low_ceiling_mb=64, high_ceiling_mb=128, baseline=HeapParameters(heap_ceiling_mb=1024))
    assert cfg.optimization_max_ceiling_mb == 8192
