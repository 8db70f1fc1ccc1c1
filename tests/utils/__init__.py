"""
Test utilities for pathbus.
"""

from .memory_utils import MemoryTracker, assert_collected, count_types

__all__ = [
    "assert_collected",
    "count_types",
    "MemoryTracker",
]
