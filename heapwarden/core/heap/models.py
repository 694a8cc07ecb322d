from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from heapwarden.core.units import format_bytes


class AdvicePriority(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"


class HeapParameters(BaseModel):
    """
    Typed tuning struct. Fields left as None are not applied.

    heap_ceiling_mb: soft upper bound on process memory the tuner manages.
    young_generation_threshold: allocations before a generation-0 collection.
    gc_interval_hint: generation-0 collections before generation 1 is collected.
    old_generation_interval: generation-1 collections before a full collection.
    """

    model_config = ConfigDict(extra="forbid")

    heap_ceiling_mb: Optional[int] = Field(default=None, ge=1)
    young_generation_threshold: Optional[int] = Field(default=None, ge=1)
    gc_interval_hint: Optional[int] = Field(default=None, ge=1)
    old_generation_interval: Optional[int] = Field(default=None, ge=1)

    def items(self) -> List[tuple[str, int]]:
        return [(k, int(v)) for k, v in self.model_dump(exclude_none=True).items()]


class HeapTunerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    baseline: HeapParameters = Field(
        default_factory=lambda: HeapParameters(heap_ceiling_mb=512, young_generation_threshold=700, gc_interval_hint=10, old_generation_interval=10)
    )
    supplementary: HeapParameters = Field(default_factory=lambda: HeapParameters(young_generation_threshold=500, gc_interval_hint=5))

    # hard bounds for adjust_heap_ceiling
    min_ceiling_mb: int = Field(default=128, ge=16, le=1_048_576)
    max_ceiling_mb: int = Field(default=4096, ge=16, le=1_048_576)
    # optimization cycle: raise by factor when usage passes the trigger, never above the cap
    optimization_trigger_percent: float = Field(default=85.0, gt=0.0, le=100.0)
    optimization_growth_factor: float = Field(default=1.5, gt=1.0, le=4.0)
    optimization_max_ceiling_mb: int = Field(default=1024, ge=16, le=1_048_576)
    # advice thresholds
    critical_usage_percent: float = Field(default=90.0, gt=0.0, le=100.0)
    high_usage_percent: float = Field(default=80.0, gt=0.0, le=100.0)
    region_pressure_percent: float = Field(default=95.0, gt=0.0, le=100.0)
    low_ceiling_mb: int = Field(default=256, ge=1)
    high_ceiling_mb: int = Field(default=2048, ge=1)

    settle_seconds: float = Field(default=1.0, ge=0.0, le=5.0)
    enforce_ceiling: bool = False

    @model_validator(mode="after")
    def _bounds_ordered(self) -> "HeapTunerConfig":
        if self.min_ceiling_mb > self.max_ceiling_mb:
            raise ValueError("min_ceiling_mb must be <= max_ceiling_mb")
        if self.high_usage_percent > self.critical_usage_percent:
            raise ValueError("high_usage_percent must be <= critical_usage_percent")
        if self.optimization_max_ceiling_mb > self.max_ceiling_mb:
            raise ValueError("optimization_max_ceiling_mb must be <= max_ceiling_mb")
        if self.low_ceiling_mb >= self.high_ceiling_mb:
            raise ValueError("low_ceiling_mb must be < high_ceiling_mb")
        return self


class HeapRegion(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    size_bytes: int
    used_bytes: int
    usage_percent: float


class HeapSnapshot(BaseModel):
    model_config = ConfigDict(extra="forbid")

    sampled_at: float = Field(default_factory=lambda: time.time())
    limit_bytes: int
    used_bytes: int
    available_bytes: int
    regions: List[HeapRegion] = Field(default_factory=list)

    @property
    def used_percent(self) -> float:
        if self.limit_bytes <= 0:
            return 0.0
        return round(float(self.used_bytes) / float(self.limit_bytes) * 100.0, 2)

    @property
    def limit_mb(self) -> float:
        return float(self.limit_bytes) / (1024 * 1024)

    def public_dict(self) -> Dict[str, Any]:
        return {
            "sampled_at": self.sampled_at,
            "limit_bytes": self.limit_bytes,
            "used_bytes": self.used_bytes,
            "available_bytes": self.available_bytes,
            "used_percent": self.used_percent,
            "limit": format_bytes(self.limit_bytes),
            "used": format_bytes(self.used_bytes),
            "available": format_bytes(self.available_bytes),
            "regions": [r.model_dump() for r in self.regions],
        }


class TuningAdvice(BaseModel):
    model_config = ConfigDict(extra="forbid")

    priority: AdvicePriority
    category: str
    message: str
    current: str = ""
    recommended_action: str


class OptimizationRun(BaseModel):
    model_config = ConfigDict(extra="forbid")

    started_at: float
    duration_ms: int = 0
    status: str = "completed"  # completed|already_running|failed
    success: bool = True
    before: Optional[HeapSnapshot] = None
    after: Optional[HeapSnapshot] = None
    applied_parameters: List[str] = Field(default_factory=list)
    rejected_parameters: List[str] = Field(default_factory=list)
    advice_after: List[TuningAdvice] = Field(default_factory=list)
    error: Optional[str] = None

    def public_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at,
            "duration_ms": self.duration_ms,
            "status": self.status,
            "success": self.success,
            "before": self.before.public_dict() if self.before is not None else None,
            "after": self.after.public_dict() if self.after is not None else None,
            "applied_parameters": list(self.applied_parameters),
            "rejected_parameters": list(self.rejected_parameters),
            "advice_after": [a.model_dump() for a in self.advice_after],
            "error": self.error,
        }
