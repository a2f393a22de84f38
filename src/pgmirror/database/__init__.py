"""
Database integration package for pgmirror.

This package provides:
- Async PostgreSQL connection pooling for the source and target stores
- Schema introspection through information_schema
- SQL identifier validation and quoting
"""

from .connection import ConnectionConfig, ConnectionPool, DatabaseManager
from .introspection import ColumnDescriptor, SchemaInspector, TableSchema

__all__ = [
    "ConnectionConfig",
    "ConnectionPool",
    "DatabaseManager",
    "ColumnDescriptor",
    "SchemaInspector",
    "TableSchema",
]
