from __future__ import annotations

import gc
import os
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from heapwarden.core.errors import CloseFailure, RegistrationConflict
from heapwarden.core.leaks.models import (
    CleanupResult,
    LeakDetectorConfig,
    LeakFinding,
    LeakRecommendation,
    LeakScan,
    RecommendationPriority,
    ResourceKind,
    TrackedResource,
    UnregisterResult,
)
from heapwarden.core.leaks.timers import RecurringTimer
from heapwarden.core.units import format_bytes, percent


_CLOSE_METHODS = ("close", "end_session", "endSession")


class ResourceLifecycleRegistry:
    """
    Resource lifecycle registry:
    - kind-partitioned bookkeeping for timers, listener sets, external sessions, large objects
    - leak classification by age OR idle time against a threshold
    - bulk cleanup of entries that are still stale when removed
    - background scan/cleanup schedules (threads), cancelled by stop()
    """

    def __init__(
        self,
        *,
        cfg: LeakDetectorConfig,
        logger=None,
        error_reporter: Any = None,
        memory_probe: Optional[Callable[[], Dict[str, Any]]] = None,
        now: Callable[[], float] = time.time,
    ):
        self.cfg = cfg
        self.logger = logger
        self.error_reporter = error_reporter
        self._memory_probe = memory_probe
        self._now = now

        self._lock = threading.RLock()
        self._resources: Dict[ResourceKind, Dict[str, TrackedResource]] = {k: {} for k in ResourceKind}
        self._timers: Dict[str, RecurringTimer] = {}
        self._sessions: Dict[str, Any] = {}
        self._background: List[RecurringTimer] = []
        self._last_scan: Optional[LeakScan] = None
        self._last_cleanup: Optional[CleanupResult] = None
        self.conflicts_recovered = 0

        if bool(cfg.enabled):
            self.start()

    # ---- lifecycle ----
    def start(self) -> None:
        with self._lock:
            if self._background:
                return
            self._background = [
                RecurringTimer(name="leak-scan", interval_seconds=float(self.cfg.scan_interval_seconds), action=self._scheduled_scan, on_error=self._on_background_error).start(),
                RecurringTimer(name="leak-cleanup", interval_seconds=float(self.cfg.cleanup_interval_seconds), action=self._scheduled_cleanup, on_error=self._on_background_error).start(),
            ]
        if self.logger is not None:
            self.logger.info(f"Leak detector started (scan every {self.cfg.scan_interval_seconds}s, cleanup every {self.cfg.cleanup_interval_seconds}s).")

    def stop(self) -> CleanupResult:
        """
        Cancels the background schedules and every registered timer, closes every
        external session, and drops the remaining bookkeeping. Safe to call twice.
        """
        with self._lock:
            background, self._background = self._background, []
            timers = dict(self._timers)
            self._timers.clear()
            sessions = dict(self._sessions)
            self._sessions.clear()
            result = CleanupResult(
                timers=len(self._resources[ResourceKind.TIMER]),
                event_listener_sets=len(self._resources[ResourceKind.EVENT_LISTENER_SET]),
                external_sessions=len(self._resources[ResourceKind.EXTERNAL_SESSION]),
                large_objects=len(self._resources[ResourceKind.LARGE_OBJECT]),
            )
            for bucket in self._resources.values():
                bucket.clear()

        for t in background:
            t.cancel()
        for t in timers.values():
            t.cancel()
        for sid, handle in sessions.items():
            failure = self._close_session(sid, handle)
            if failure is not None:
                result.close_failures.append(failure.to_dict())
        if self.logger is not None and (background or result.total):
            self.logger.info(f"Leak detector stopped (released {result.total} tracked resource(s)).")
        return result

    # ---- timers ----
    def register_timer(self, id: str, interval_ms: float, action: Callable[[], None], *, label: str = "") -> TrackedResource:
        interval_ms = float(interval_ms)
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        now = self._now()
        entry = TrackedResource(
            id=str(id),
            kind=ResourceKind.TIMER,
            created_at=now,
            last_access_at=now,
            descriptor={"interval_ms": interval_ms, "label": label or getattr(action, "__name__", "")},
        )
        with self._lock:
            previous = self._timers.pop(entry.id, None)
            if previous is not None:
                # stop flag is set before the replacement starts; join happens below
                previous.cancel(join_timeout=0.0)
                self._record_conflict(ResourceKind.TIMER, entry.id)
            timer = RecurringTimer(
                name=f"timer:{entry.id}",
                interval_seconds=interval_ms / 1000.0,
                action=action,
                on_error=lambda e, _id=entry.id: self._on_timer_error(_id, e),
            )
            self._timers[entry.id] = timer
            self._resources[ResourceKind.TIMER][entry.id] = entry
            timer.start()
        if previous is not None:
            previous.cancel()
        return entry

    def unregister_timer(self, id: str) -> bool:
        with self._lock:
            timer = self._timers.pop(str(id), None)
            existed = self._resources[ResourceKind.TIMER].pop(str(id), None) is not None
        if timer is not None:
            timer.cancel()
        return existed

    # ---- event listener sets ----
    def register_event_listener_set(self, id: str, event: str, listener_label: str) -> TrackedResource:
        now = self._now()
        listener = {"event": str(event), "label": str(listener_label), "added_at": now}
        with self._lock:
            bucket = self._resources[ResourceKind.EVENT_LISTENER_SET]
            entry = bucket.get(str(id))
            if entry is None:
                entry = TrackedResource(
                    id=str(id),
                    kind=ResourceKind.EVENT_LISTENER_SET,
                    created_at=now,
                    last_access_at=now,
                    descriptor={"listeners": [listener], "label": str(listener_label)},
                )
                bucket[entry.id] = entry
            else:
                entry.descriptor.setdefault("listeners", []).append(listener)
                entry.touch(now)
            return entry.model_copy(deep=True)

    def unregister_event_listener_set(self, id: str) -> bool:
        with self._lock:
            return self._resources[ResourceKind.EVENT_LISTENER_SET].pop(str(id), None) is not None

    # ---- external sessions ----
    def register_external_session(self, id: str, session: Any, *, label: str = "") -> TrackedResource:
        now = self._now()
        entry = TrackedResource(
            id=str(id),
            kind=ResourceKind.EXTERNAL_SESSION,
            created_at=now,
            last_access_at=now,
            descriptor={"handle_type": type(session).__name__, "label": label},
        )
        with self._lock:
            previous = self._sessions.pop(entry.id, None)
            replaced = entry.id in self._resources[ResourceKind.EXTERNAL_SESSION]
            self._sessions[entry.id] = session
            self._resources[ResourceKind.EXTERNAL_SESSION][entry.id] = entry
        if replaced:
            self._record_conflict(ResourceKind.EXTERNAL_SESSION, entry.id)
            if previous is not None and previous is not session:
                self._close_session(entry.id, previous)
        return entry

    def unregister_external_session(self, id: str) -> UnregisterResult:
        with self._lock:
            entry = self._resources[ResourceKind.EXTERNAL_SESSION].pop(str(id), None)
            handle = self._sessions.pop(str(id), None)
        if entry is None:
            return UnregisterResult(existed=False)
        failure = self._close_session(str(id), handle)
        if failure is not None:
            return UnregisterResult.failed(failure)
        return UnregisterResult(existed=True, closed=True)

    # ---- large objects ----
    def register_large_object(self, id: str, size_bytes: int, type_tag: str, metadata: Optional[Dict[str, Any]] = None) -> TrackedResource:
        if int(size_bytes) < 0:
            raise ValueError("size_bytes must be >= 0")
        now = self._now()
        entry = TrackedResource(
            id=str(id),
            kind=ResourceKind.LARGE_OBJECT,
            created_at=now,
            last_access_at=now,
            descriptor={"size_bytes": int(size_bytes), "type_tag": str(type_tag), "metadata": dict(metadata or {})},
        )
        with self._lock:
            if entry.id in self._resources[ResourceKind.LARGE_OBJECT]:
                self._record_conflict(ResourceKind.LARGE_OBJECT, entry.id)
            self._resources[ResourceKind.LARGE_OBJECT][entry.id] = entry
        return entry

    def unregister_large_object(self, id: str) -> bool:
        with self._lock:
            return self._resources[ResourceKind.LARGE_OBJECT].pop(str(id), None) is not None

    # ---- shared ----
    def touch(self, kind: ResourceKind, id: str) -> bool:
        with self._lock:
            entry = self._resources[ResourceKind(kind)].get(str(id))
            if entry is None:
                return False
            entry.touch(self._now())
            return True

    def get_resource(self, kind: ResourceKind, id: str) -> Optional[TrackedResource]:
        with self._lock:
            entry = self._resources[ResourceKind(kind)].get(str(id))
            return entry.model_copy(deep=True) if entry is not None else None

    def tracking_counts(self) -> Dict[str, int]:
        with self._lock:
            return {
                "timers": len(self._resources[ResourceKind.TIMER]),
                "event_listener_sets": len(self._resources[ResourceKind.EVENT_LISTENER_SET]),
                "external_sessions": len(self._resources[ResourceKind.EXTERNAL_SESSION]),
                "large_objects": len(self._resources[ResourceKind.LARGE_OBJECT]),
            }

    # ---- detection ----
    def scan_for_leaks(self) -> LeakScan:
        now = self._now()
        with self._lock:
            entries = [e.model_copy(deep=True) for bucket in self._resources.values() for e in bucket.values()]
        scan = LeakScan(scanned_at=now)
        for e in entries:
            if self._is_stale(e, now):
                age = max(0.0, now - e.created_at)
                idle = max(0.0, now - e.last_access_at)
                scan.by_kind(e.kind).append(
                    LeakFinding(
                        resource_id=e.id,
                        kind=e.kind,
                        age_ms=int(round(age * 1000)),
                        idle_ms=int(round(idle * 1000)),
                        descriptor_summary=e.summary(),
                    )
                )
        with self._lock:
            self._last_scan = scan
        return scan

    def auto_cleanup_leaks(self) -> CleanupResult:
        """
        Releases every flagged resource that is still stale when its turn
        comes. An id re-registered after the scan is left alone.
        """
        scan = self.scan_for_leaks()
        result = CleanupResult()
        for finding in scan.all():
            try:
                released, handle = self._release_if_stale(finding.kind, finding.resource_id)
                if not released:
                    continue
                if finding.kind == ResourceKind.TIMER:
                    if handle is not None:
                        handle.cancel()
                    result.timers += 1
                elif finding.kind == ResourceKind.EVENT_LISTENER_SET:
                    result.event_listener_sets += 1
                elif finding.kind == ResourceKind.EXTERNAL_SESSION:
                    result.external_sessions += 1
                    failure = self._close_session(finding.resource_id, handle)
                    if failure is not None:
                        result.close_failures.append(failure.to_dict())
                elif finding.kind == ResourceKind.LARGE_OBJECT:
                    result.large_objects += 1
            except Exception as e:  # noqa: BLE001
                result.errors.append(f"{finding.kind.value}:{finding.resource_id}: {e}")
        with self._lock:
            self._last_cleanup = result
        if self.logger is not None and result.total:
            self.logger.info(
                f"Leak cleanup: timers={result.timers} listener_sets={result.event_listener_sets} "
                f"sessions={result.external_sessions} large_objects={result.large_objects} close_failures={len(result.close_failures)}"
            )
        return result

    # ---- reporting ----
    def get_memory_stats(self) -> Dict[str, Any]:
        mem = self._probe_memory()
        large_bytes = 0
        with self._lock:
            for e in self._resources[ResourceKind.LARGE_OBJECT].values():
                large_bytes += int(e.descriptor.get("size_bytes") or 0)
        return {
            "process": {
                "rss": format_bytes(mem.get("rss_bytes")),
                "vms": format_bytes(mem.get("vms_bytes")),
                "rss_bytes": mem.get("rss_bytes"),
                "vms_bytes": mem.get("vms_bytes"),
                "system_total": format_bytes(mem.get("system_total_bytes")),
                "rss_percent_of_system": percent(mem.get("rss_bytes"), mem.get("system_total_bytes")),
            },
            "collector": {
                "generation_counts": list(gc.get_count()),
                "thresholds": list(gc.get_threshold()),
            },
            "tracking": {**self.tracking_counts(), "large_object_bytes": large_bytes, "large_object_size": format_bytes(large_bytes)},
        }

    def get_leak_report(self) -> Dict[str, Any]:
        scan = self.scan_for_leaks()
        return {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "memory_stats": self.get_memory_stats(),
            "leaks": scan.counts(),
            "details": {
                "timers": [f.model_dump() for f in scan.timers],
                "event_listener_sets": [f.model_dump() for f in scan.event_listener_sets],
                "external_sessions": [f.model_dump() for f in scan.external_sessions],
                "large_objects": [f.model_dump() for f in scan.large_objects],
            },
            "recommendations": [r.model_dump() for r in recommendations_for(scan)],
            "threshold_seconds": float(self.cfg.leak_threshold_seconds),
            "conflicts_recovered": int(self.conflicts_recovered),
        }

    # ---- internals ----
    def _scheduled_scan(self) -> None:
        scan = self.scan_for_leaks()
        if not scan.total:
            return
        if self.logger is not None:
            self.logger.warning(f"Detected {scan.total} potential leak(s): {scan.counts()}")
        if bool(self.cfg.auto_cleanup_on_scan):
            self.auto_cleanup_leaks()

    def _scheduled_cleanup(self) -> None:
        self.auto_cleanup_leaks()

    def _is_stale(self, entry: TrackedResource, now: float) -> bool:
        threshold = self.cfg.threshold_for(entry.kind)
        return (now - entry.created_at) > threshold or (now - entry.last_access_at) > threshold

    def _release_if_stale(self, kind: ResourceKind, id: str) -> Tuple[bool, Any]:
        # staleness is re-checked against the live entry under the same lock that pops it
        with self._lock:
            bucket = self._resources[kind]
            entry = bucket.get(id)
            if entry is None or not self._is_stale(entry, self._now()):
                return False, None
            bucket.pop(id)
            if kind == ResourceKind.TIMER:
                return True, self._timers.pop(id, None)
            if kind == ResourceKind.EXTERNAL_SESSION:
                return True, self._sessions.pop(id, None)
            return True, None

    def _close_session(self, id: str, handle: Any) -> Optional[CloseFailure]:
        if handle is None:
            return None
        closer = None
        for name in _CLOSE_METHODS:
            fn = getattr(handle, name, None)
            if callable(fn):
                closer = fn
                break
        if closer is None:
            return None
        try:
            closer()
            return None
        except Exception as e:  # noqa: BLE001
            err = CloseFailure(session_id=id, handle_type=type(handle).__name__, error=str(e))
            if self.logger is not None:
                self.logger.warning(f"Closing external session {id} failed (dropped from tracking): {e}")
            if self.error_reporter is not None:
                self.error_reporter.write_error(err, trace_id=f"session:{id}", subsystem="leak_detector", internal_exc=e)
            return err

    def _record_conflict(self, kind: ResourceKind, id: str) -> None:
        self.conflicts_recovered += 1
        if self.logger is not None:
            conflict = RegistrationConflict(kind=kind.value, resource_id=id)
            self.logger.warning(f"{conflict.user_message} ({kind.value}:{id})")

    def _on_timer_error(self, id: str, exc: BaseException) -> None:
        if self.logger is not None:
            self.logger.warning(f"Timer {id} action failed: {exc}")

    def _on_background_error(self, exc: BaseException) -> None:
        if self.logger is not None:
            self.logger.error(f"Leak detector background pass failed: {exc}")
        if self.error_reporter is not None:
            self.error_reporter.report_exception(exc, trace_id="leaks", subsystem="leak_detector")

    def _probe_memory(self) -> Dict[str, Any]:
        if self._memory_probe is not None:
            try:
                return dict(self._memory_probe() or {})
            except Exception:
                return {}
        return process_memory()


def process_memory() -> Dict[str, Any]:
    """
    Best-effort process memory via psutil; missing values are None.
    """
    out: Dict[str, Any] = {"rss_bytes": None, "vms_bytes": None, "system_total_bytes": None}
    try:
        import psutil  # type: ignore

        mi = psutil.Process(os.getpid()).memory_info()
        out["rss_bytes"] = int(mi.rss)
        out["vms_bytes"] = int(mi.vms)
        out["system_total_bytes"] = int(psutil.virtual_memory().total)
    except Exception:
        pass
    return out


def recommendations_for(scan: LeakScan) -> List[LeakRecommendation]:
    recs: List[LeakRecommendation] = []
    if scan.external_sessions:
        recs.append(
            LeakRecommendation(
                priority=RecommendationPriority.CRITICAL,
                category="EXTERNAL_SESSION_LEAK",
                message=f"{len(scan.external_sessions)} external session(s) left open",
                recommended_action="Close the sessions now; they hold shared pool capacity.",
            )
        )
    if scan.timers:
        recs.append(
            LeakRecommendation(
                priority=RecommendationPriority.HIGH,
                category="TIMER_LEAK",
                message=f"{len(scan.timers)} long-running timer(s)",
                recommended_action="Cancel timers that are no longer needed.",
            )
        )
    if scan.event_listener_sets:
        recs.append(
            LeakRecommendation(
                priority=RecommendationPriority.HIGH,
                category="EVENT_LISTENER_LEAK",
                message=f"{len(scan.event_listener_sets)} stale event listener set(s)",
                recommended_action="Remove listeners when their owner goes away.",
            )
        )
    if scan.large_objects:
        recs.append(
            LeakRecommendation(
                priority=RecommendationPriority.MEDIUM,
                category="LARGE_OBJECT_LEAK",
                message=f"{len(scan.large_objects)} large object(s) not released",
                recommended_action="Evict large cached objects.",
            )
        )
    return recs
