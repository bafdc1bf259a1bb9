# tasks/__init__.py
from tasks.reconciliation import ReconciliationConfig, ReconciliationSweep

__all__ = [
    "ReconciliationConfig",
    "ReconciliationSweep",
]
