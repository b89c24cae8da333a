"""
ETL run lifecycle tracking.
"""

from .process_tracker import ProcessTracker, TrackedRun

__all__ = ["ProcessTracker", "TrackedRun"]
