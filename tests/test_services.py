from __future__ import annotations

import os

from heapwarden.core.config.models import MonitorConfig
from heapwarden.core.heap.models import HeapTunerConfig
from heapwarden.core.heap.tuner import RuntimeHeapTuner
from heapwarden.core.leaks.models import LeakDetectorConfig
from heapwarden.core.leaks.registry import ResourceLifecycleRegistry
from heapwarden.core.services import build_services
from tests.helpers.fakes import FakeHeapRuntime


def _cfg(tmp_path) -> MonitorConfig:
    cfg = MonitorConfig()
    cfg.logging.log_dir = str(tmp_path / "logs")
    cfg.leak_detector.enabled = False
    return cfg


def test_build_services_with_defaults(tmp_path, logger):
    s = build_services(_cfg(tmp_path), logger=logger)
    try:
        assert s.healthy is True
        assert s.init_errors == {}
        assert s.heap_tuner.initialized is True
        assert s.leak_detector.tracking_counts()["timers"] == 0
    finally:
        s.stop()


def test_disabled_tuner_reported_as_init_failure(tmp_path, logger):
    cfg = _cfg(tmp_path)
    cfg.heap_tuner.enabled = False
    s = build_services(cfg, logger=logger)
    try:
        assert s.heap_tuner is None
        assert s.leak_detector_up is True
        assert s.healthy is False
        assert s.init_errors["heap_tuner"]["code"] == "initialization_failure"
        assert s.error_reporter.tail(1)[0]["subsystem"] == "heap_tuner"
    finally:
        s.stop()


def test_failing_factory_keeps_other_component(tmp_path, logger):
    def broken():
        raise OSError("cannot open /proc")

    s = build_services(
        _cfg(tmp_path),
        logger=logger,
        leak_detector_factory=broken,
        heap_tuner_factory=lambda: RuntimeHeapTuner(cfg=HeapTunerConfig(settle_seconds=0.0), runtime=FakeHeapRuntime()),
    )
    assert s.leak_detector is None
    assert s.heap_tuner_up is True
    assert s.init_errors["leak_detector"]["context"]["error"] == "cannot open /proc"
    assert any("leak_detector unavailable" in m for m in logger.messages("error"))
    s.stop()


def test_stop_releases_registry(tmp_path):
    reg = ResourceLifecycleRegistry(cfg=LeakDetectorConfig(enabled=False))
    s = build_services(_cfg(tmp_path), leak_detector_factory=lambda: reg)
    reg.register_large_object("o1", 10, "x")
    s.stop()
    assert reg.tracking_counts()["large_objects"] == 0


def test_error_log_resolves_under_root(tmp_path):
    cfg = MonitorConfig()
    cfg.leak_detector.enabled = False
    cfg.heap_tuner.enabled = False
    s = build_services(cfg, root=str(tmp_path))
    try:
        assert s.error_reporter.path == os.path.join(str(tmp_path), "logs", "errors.jsonl")
        assert s.error_reporter.tail(1)[0]["subsystem"] == "heap_tuner"
        assert os.path.isfile(tmp_path / "logs" / "errors.jsonl")
    finally:
        s.stop()
