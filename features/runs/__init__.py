"""
Runs feature — tracks Job Runs through a pipeline invocation and stores run records.

Public API:
    from features.runs import RunTracker
    from features.runs import store as run_store
"""

from features.runs.tracker import RunTracker

__all__ = ["RunTracker"]
