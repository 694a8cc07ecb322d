from heapwarden.core.config.manager import ConfigManager
from heapwarden.core.config.models import MonitorConfig

__all__ = ["ConfigManager", "MonitorConfig"]
