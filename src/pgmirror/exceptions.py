"""
Exception classes for pgmirror.
"""

from typing import Any, Dict, Optional


class MirrorError(Exception):
    """Base exception for all pgmirror errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        result = self.message
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            result += f" [{details_str}]"
        if self.cause:
            result += f" (caused by: {self.cause})"
        return result


class ConfigurationError(MirrorError):
    """Raised when there's an error in configuration."""

    pass


class ValidationError(MirrorError):
    """Raised when there's a validation error."""

    pass


class IdentifierError(ValidationError):
    """Raised when a table or column name is not a safe SQL identifier."""

    def __init__(self, identifier: str) -> None:
        super().__init__(
            f"Invalid SQL identifier: {identifier!r}. "
            "Only ASCII letters, digits and underscores are allowed, "
            "and it must start with a letter or underscore."
        )
        self.identifier = identifier


class DatabaseError(MirrorError):
    """Raised when there's an error with database operations."""

    pass


class ConnectivityError(DatabaseError):
    """Raised when a connection to a store cannot be established."""

    pass


class StorePermissionError(DatabaseError):
    """Raised when a store's access control rejects a query."""

    pass


class SchemaError(DatabaseError):
    """Raised when there's an error with database schema operations."""

    pass


class SchemaApplicationError(SchemaError):
    """Raised when a single DDL statement fails against the target store."""

    def __init__(
        self,
        table_name: str,
        statement: str,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(
            f"Failed to apply schema change to '{table_name}'",
            {"statement": statement.strip().splitlines()[0] if statement.strip() else ""},
            cause,
        )
        self.table_name = table_name
        self.statement = statement


class AmbiguousPrimaryKeyError(SchemaError):
    """Raised when a table has no primary key usable for upserts."""

    def __init__(self, table_name: str, reason: str) -> None:
        super().__init__(f"Table '{table_name}' cannot be upserted by key: {reason}")
        self.table_name = table_name
        self.reason = reason


class SyncError(MirrorError):
    """Raised when there's an error copying data between stores."""

    pass


class RowUpsertError(SyncError):
    """Raised when a single row cannot be written to the copy target."""

    def __init__(
        self,
        table_name: str,
        key: Dict[str, Any],
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(f"Failed to upsert row into '{table_name}'", dict(key), cause)
        self.table_name = table_name
        self.key = key
