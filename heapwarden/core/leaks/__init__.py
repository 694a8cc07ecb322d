"""
Resource lifecycle registry (leak detection).

Application code registers ephemeral resources (timers, listener sets,
external sessions, large objects) as it creates them; the registry flags
entries whose age or idle time passes the configured threshold and can
release them in bulk.
"""

from heapwarden.core.leaks.models import LeakDetectorConfig, ResourceKind
from heapwarden.core.leaks.registry import ResourceLifecycleRegistry

__all__ = ["LeakDetectorConfig", "ResourceKind", "ResourceLifecycleRegistry"]
