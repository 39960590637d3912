"""
Features package — each sub-package encapsulates a self-contained feature.

Convention:
  features/<feature_name>/
    __init__.py      — public API re-exports
    tracker.py       — runtime tracking / state management (if applicable)
    store.py         — persistence of finished records (if applicable)
    ...              — any other feature-specific modules

Features:
  runs/  — Job Run status transitions and JSON run records
"""
