"""
Burst shaping package: per-user debounce and duplicate suppression.
"""

from .debounce import Debouncer
from .duplicates import DuplicateDetector

__all__ = ["Debouncer", "DuplicateDetector"]
