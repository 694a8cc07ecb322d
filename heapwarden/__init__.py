"""
heapwarden: resource-leak detection and runtime heap tuning for long-running servers.
"""

__version__ = "0.1.0"
