"""
Data synchronization package for pgmirror.
"""

from .counter import RowCounter, UNKNOWN_COUNT
from .reconciler import (
    ConflictStrategy,
    DataReconciler,
    ReconciliationResult,
    SyncDirection,
    SyncMode,
    TableStatus,
)

__all__ = [
    "RowCounter",
    "UNKNOWN_COUNT",
    "ConflictStrategy",
    "DataReconciler",
    "ReconciliationResult",
    "SyncDirection",
    "SyncMode",
    "TableStatus",
]
