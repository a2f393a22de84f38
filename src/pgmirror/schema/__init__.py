"""
Schema management package for pgmirror.

This package provides:
- Structural diffing of source and target schemas
- Additive CREATE TABLE / ADD COLUMN operations on the target
"""

from .differ import ColumnMismatch, SchemaDiff, SchemaDiffer
from .operations import ChangeType, OperationMode, SchemaApplier, SchemaChange

__all__ = [
    "ColumnMismatch",
    "SchemaDiff",
    "SchemaDiffer",
    "ChangeType",
    "OperationMode",
    "SchemaApplier",
    "SchemaChange",
]
