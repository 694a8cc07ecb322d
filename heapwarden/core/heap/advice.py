from __future__ import annotations

from typing import List

from heapwarden.core.heap.models import AdvicePriority, HeapSnapshot, HeapTunerConfig, TuningAdvice


def advise(cfg: HeapTunerConfig, *, snapshot: HeapSnapshot) -> List[TuningAdvice]:
    out: List[TuningAdvice] = []
    used = snapshot.used_percent
    if used > float(cfg.critical_usage_percent):
        out.append(
            TuningAdvice(
                priority=AdvicePriority.CRITICAL,
                category="HEAP_USAGE",
                message="Heap near exhaustion",
                current=f"{used:.2f}%",
                recommended_action="increase-heap-limit",
            )
        )
    elif used > float(cfg.high_usage_percent):
        out.append(
            TuningAdvice(
                priority=AdvicePriority.HIGH,
                category="HEAP_USAGE",
                message="Heap usage high; monitor or raise the ceiling",
                current=f"{used:.2f}%",
                recommended_action="monitor-usage",
            )
        )

    for region in snapshot.regions:
        if region.usage_percent > float(cfg.region_pressure_percent):
            out.append(
                TuningAdvice(
                    priority=AdvicePriority.HIGH,
                    category="REGION_PRESSURE",
                    message=f"Region '{region.name}' under pressure",
                    current=f"{region.usage_percent:.2f}%",
                    recommended_action="optimize-region-usage",
                )
            )

    limit_mb = snapshot.limit_mb
    if limit_mb < float(cfg.low_ceiling_mb):
        out.append(
            TuningAdvice(
                priority=AdvicePriority.MEDIUM,
                category="HEAP_LIMIT",
                message="Heap ceiling may be too low",
                current=f"{limit_mb:.0f}MB",
                recommended_action="increase-heap-limit",
            )
        )
    elif limit_mb > float(cfg.high_ceiling_mb):
        out.append(
            TuningAdvice(
                priority=AdvicePriority.MEDIUM,
                category="HEAP_LIMIT",
                message="Heap ceiling may be wastefully high",
                current=f"{limit_mb:.0f}MB",
                recommended_action="decrease-heap-limit",
            )
        )
    return out


def count_by_priority(advice: List[TuningAdvice], priority: AdvicePriority) -> int:
    return sum(1 for a in advice if a.priority == priority)
