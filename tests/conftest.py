from __future__ import annotations

import os

import pytest

from heapwarden.core.config.paths import ConfigFsPaths
from heapwarden.core.error_reporter import ErrorReporter
from heapwarden.core.heap.models import HeapTunerConfig
from heapwarden.core.heap.tuner import RuntimeHeapTuner
from heapwarden.core.leaks.models import LeakDetectorConfig
from heapwarden.core.leaks.registry import ResourceLifecycleRegistry
from tests.helpers.fakes import FakeClock, FakeHeapRuntime, RecordingLogger


@pytest.fixture
def tmp_config_root(tmp_path):
    """
    Provides an isolated root with config/ under tmp_path.
    """
    fs = ConfigFsPaths(root=str(tmp_path))
    os.makedirs(fs.config_dir, exist_ok=True)
    return fs


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def logger():
    return RecordingLogger()


@pytest.fixture
def error_reporter(tmp_path):
    return ErrorReporter(path=str(tmp_path / "logs" / "errors.jsonl"))


@pytest.fixture
def registry(clock, logger, error_reporter):
    # background schedules off; tests drive scans explicitly
    reg = ResourceLifecycleRegistry(cfg=LeakDetectorConfig(enabled=False), logger=logger, error_reporter=error_reporter, now=clock.time, memory_probe=lambda: {"rss_bytes": 64 * 1024 * 1024})
    yield reg
    reg.stop()


@pytest.fixture
def fake_runtime():
    return FakeHeapRuntime()


@pytest.fixture
def tuner(fake_runtime, logger, error_reporter):
    return RuntimeHeapTuner(cfg=HeapTunerConfig(settle_seconds=0.0), runtime=fake_runtime, logger=logger, error_reporter=error_reporter)
