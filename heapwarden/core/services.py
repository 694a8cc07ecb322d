from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from heapwarden.core.config.models import MonitorConfig
from heapwarden.core.error_reporter import ErrorReporter, ErrorReporterConfig
from heapwarden.core.errors import InitializationFailure
from heapwarden.core.heap.tuner import RuntimeHeapTuner
from heapwarden.core.leaks.registry import ResourceLifecycleRegistry


@dataclass
class MonitorServices:
    """
    Explicitly constructed component set. Either component may be None when it
    failed to initialize; the failure is kept in `init_errors` and the rest of
    the process keeps running.
    """

    leak_detector: Optional[ResourceLifecycleRegistry]
    heap_tuner: Optional[RuntimeHeapTuner]
    error_reporter: Optional[ErrorReporter] = None
    init_errors: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)

    @property
    def leak_detector_up(self) -> bool:
        return self.leak_detector is not None

    @property
    def heap_tuner_up(self) -> bool:
        return self.heap_tuner is not None

    @property
    def healthy(self) -> bool:
        return self.leak_detector_up and self.heap_tuner_up

    def uptime_seconds(self) -> float:
        return max(0.0, time.time() - self.started_at)

    def stop(self) -> None:
        if self.leak_detector is not None:
            self.leak_detector.stop()


def build_services(
    cfg: MonitorConfig,
    *,
    root: str = ".",
    logger=None,
    error_reporter: Optional[ErrorReporter] = None,
    leak_detector_factory: Optional[Callable[[], ResourceLifecycleRegistry]] = None,
    heap_tuner_factory: Optional[Callable[[], RuntimeHeapTuner]] = None,
) -> MonitorServices:
    """`root` is the directory app.py runs against; a relative log_dir resolves under it."""
    if error_reporter is None:
        error_reporter = ErrorReporter(
            path=os.path.join(root, cfg.logging.log_dir, "errors.jsonl"),
            cfg=ErrorReporterConfig(include_tracebacks=bool(cfg.logging.include_tracebacks)),
            logger=logger,
        )
    services = MonitorServices(leak_detector=None, heap_tuner=None, error_reporter=error_reporter)

    def _default_leak_detector() -> ResourceLifecycleRegistry:
        return ResourceLifecycleRegistry(cfg=cfg.leak_detector, logger=logger, error_reporter=error_reporter)

    def _default_heap_tuner() -> RuntimeHeapTuner:
        if not bool(cfg.heap_tuner.enabled):
            raise InitializationFailure("Heap tuner disabled by configuration.", component="heap_tuner")
        tuner = RuntimeHeapTuner(cfg=cfg.heap_tuner, logger=logger, error_reporter=error_reporter)
        tuner.initialize()
        return tuner

    services.leak_detector = _init_component("leak_detector", leak_detector_factory or _default_leak_detector, services, logger)
    services.heap_tuner = _init_component("heap_tuner", heap_tuner_factory or _default_heap_tuner, services, logger)
    return services


def _init_component(name: str, factory: Callable[[], Any], services: MonitorServices, logger) -> Any:
    try:
        component = factory()
    except Exception as e:  # noqa: BLE001
        err = e if isinstance(e, InitializationFailure) else InitializationFailure(f"{name} failed to initialize.", component=name, error=str(e))
        services.init_errors[name] = err.to_dict()
        if logger is not None:
            logger.error(f"{name} unavailable (init failed): {e}")
        if services.error_reporter is not None:
            services.error_reporter.write_error(err, trace_id="startup", subsystem=name, internal_exc=e)
        return None
    if logger is not None:
        logger.info(f"{name} initialized")
    return component
