"""
pgmirror: schema and data reconciliation between two PostgreSQL databases.

pgmirror brings a target database's schema up to a superset of a source
database's schema and copies rows from whichever side holds more of them,
upserting by primary key.
"""

__version__ = "0.1.0"

from .config import MirrorConfig
from .exceptions import (
    MirrorError,
    ConfigurationError,
    ConnectivityError,
    StorePermissionError,
    SchemaApplicationError,
    RowUpsertError,
    AmbiguousPrimaryKeyError,
)

__all__ = [
    "__version__",
    "MirrorConfig",
    "MirrorError",
    "ConfigurationError",
    "ConnectivityError",
    "StorePermissionError",
    "SchemaApplicationError",
    "RowUpsertError",
    "AmbiguousPrimaryKeyError",
]
