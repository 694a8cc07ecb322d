from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from heapwarden.core.heap.models import HeapTunerConfig
from heapwarden.core.leaks.models import LeakDetectorConfig


class WebConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    bind_host: str = "127.0.0.1"
    port: int = Field(default=8090, ge=1, le=65535)
    prefix: str = "/api/memory-optimization"
    post_optimization_settle_seconds: float = Field(default=2.0, ge=0.0, le=10.0)


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    log_dir: str = "logs"
    level: str = "INFO"
    include_tracebacks: bool = False


class MonitorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    leak_detector: LeakDetectorConfig = Field(default_factory=LeakDetectorConfig)
    heap_tuner: HeapTunerConfig = Field(default_factory=HeapTunerConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
