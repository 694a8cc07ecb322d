from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from heapwarden.core.errors import CloseFailure


DESCRIPTOR_SUMMARY_MAX = 100


class ResourceKind(str, Enum):
    TIMER = "TIMER"
    EVENT_LISTENER_SET = "EVENT_LISTENER_SET"
    EXTERNAL_SESSION = "EXTERNAL_SESSION"
    LARGE_OBJECT = "LARGE_OBJECT"


class RecommendationPriority(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"


class LeakDetectorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    leak_threshold_seconds: float = Field(default=300.0, gt=0.0, le=86400.0)
    # Optional per-kind override, keyed by ResourceKind value.
    per_kind_threshold_seconds: Dict[ResourceKind, float] = Field(default_factory=dict)
    scan_interval_seconds: float = Field(default=30.0, ge=0.5, le=3600.0)
    cleanup_interval_seconds: float = Field(default=60.0, ge=0.5, le=3600.0)
    auto_cleanup_on_scan: bool = True

    def threshold_for(self, kind: ResourceKind) -> float:
        override = self.per_kind_threshold_seconds.get(kind)
        if override is not None and float(override) > 0:
            return float(override)
        return float(self.leak_threshold_seconds)


class TrackedResource(BaseModel):
    """
    Bookkeeping entry owned by the registry. Live handles (timer threads,
    sessions awaiting close) are kept beside it, never inside it.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    kind: ResourceKind
    created_at: float
    last_access_at: float
    descriptor: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _access_not_before_creation(self) -> "TrackedResource":
        if self.last_access_at < self.created_at:
            self.last_access_at = self.created_at
        return self

    def touch(self, now: float) -> None:
        self.last_access_at = max(self.created_at, float(now))

    def summary(self) -> str:
        label = str(self.descriptor.get("label") or "")
        if self.kind == ResourceKind.TIMER:
            text = f"every {self.descriptor.get('interval_ms')}ms: {label}"
        elif self.kind == ResourceKind.EVENT_LISTENER_SET:
            listeners = self.descriptor.get("listeners") or []
            events = sorted({str(x.get("event")) for x in listeners})
            text = f"{len(listeners)} listener(s) on {','.join(events)}: {label}"
        elif self.kind == ResourceKind.EXTERNAL_SESSION:
            text = f"{self.descriptor.get('handle_type')}: {label}"
        else:
            text = f"{self.descriptor.get('type_tag')} ({self.descriptor.get('size_bytes')} bytes)"
        text = text.rstrip(": ").strip()
        if len(text) > DESCRIPTOR_SUMMARY_MAX:
            return text[: DESCRIPTOR_SUMMARY_MAX - 3] + "..."
        return text


class LeakFinding(BaseModel):
    model_config = ConfigDict(extra="forbid")

    resource_id: str
    kind: ResourceKind
    age_ms: int
    idle_ms: int
    descriptor_summary: str = ""


class LeakScan(BaseModel):
    model_config = ConfigDict(extra="forbid")

    scanned_at: float = Field(default_factory=lambda: time.time())
    timers: List[LeakFinding] = Field(default_factory=list)
    event_listener_sets: List[LeakFinding] = Field(default_factory=list)
    external_sessions: List[LeakFinding] = Field(default_factory=list)
    large_objects: List[LeakFinding] = Field(default_factory=list)

    def by_kind(self, kind: ResourceKind) -> List[LeakFinding]:
        return {
            ResourceKind.TIMER: self.timers,
            ResourceKind.EVENT_LISTENER_SET: self.event_listener_sets,
            ResourceKind.EXTERNAL_SESSION: self.external_sessions,
            ResourceKind.LARGE_OBJECT: self.large_objects,
        }[kind]

    def all(self) -> List[LeakFinding]:
        return [*self.timers, *self.event_listener_sets, *self.external_sessions, *self.large_objects]

    @property
    def total(self) -> int:
        return len(self.timers) + len(self.event_listener_sets) + len(self.external_sessions) + len(self.large_objects)

    def counts(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "timers": len(self.timers),
            "event_listener_sets": len(self.event_listener_sets),
            "external_sessions": len(self.external_sessions),
            "large_objects": len(self.large_objects),
        }


class UnregisterResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    existed: bool
    closed: bool = False
    failure: Optional[Dict[str, Any]] = None

    @classmethod
    def failed(cls, err: CloseFailure) -> "UnregisterResult":
        return cls(existed=True, closed=False, failure=err.to_dict())


class CleanupResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timers: int = 0
    event_listener_sets: int = 0
    external_sessions: int = 0
    large_objects: int = 0
    close_failures: List[Dict[str, Any]] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return self.timers + self.event_listener_sets + self.external_sessions + self.large_objects

    def public_dict(self) -> Dict[str, Any]:
        out = self.model_dump()
        out["total"] = self.total
        return out


class LeakRecommendation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    priority: RecommendationPriority
    category: str
    message: str
    recommended_action: str
