"""
SQL identifier validation and quoting.

Table and column names come from catalog metadata and cannot be bound as
query parameters, so every name is checked against a strict allow-list and
double-quoted before it is interpolated into a statement.
"""

import re
from typing import Iterable, Optional

from ..exceptions import IdentifierError


VALID_IDENTIFIER = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")


def validate_identifier(identifier: str) -> str:
    """Return the identifier unchanged, or raise IdentifierError."""
    if not identifier or not VALID_IDENTIFIER.fullmatch(identifier):
        raise IdentifierError(identifier)
    return identifier


def quote_identifier(identifier: str) -> str:
    """Validate and double-quote a single identifier."""
    return f'"{validate_identifier(identifier)}"'


def quote_table(table: str, schema: Optional[str] = None) -> str:
    """Quote a table name, optionally qualified by schema."""
    if schema:
        return f"{quote_identifier(schema)}.{quote_identifier(table)}"
    return quote_identifier(table)


def quote_columns(columns: Iterable[str]) -> str:
    """Quote and comma-join a sequence of column names."""
    return ", ".join(quote_identifier(c) for c in columns)
