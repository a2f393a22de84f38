"""
Database schema introspection for pgmirror.

Reads tables, columns and primary keys from a store's information_schema.
Every inspection builds fresh snapshots; nothing is cached between runs.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .connection import ConnectionPool, is_connectivity_error, is_permission_error
from ..exceptions import ConnectivityError, SchemaError, StorePermissionError


logger = logging.getLogger(__name__)

SYSTEM_SCHEMAS = frozenset({"information_schema", "pg_catalog", "pg_toast"})


@dataclass(frozen=True)
class ColumnDescriptor:
    """Snapshot of one column at inspection time."""

    name: str
    sql_type: str
    nullable: bool = True
    default_expr: Optional[str] = None
    max_length: Optional[int] = None
    numeric_precision: Optional[int] = None
    numeric_scale: Optional[int] = None
    udt_name: Optional[str] = None
    ordinal_position: int = 0
    is_identity: bool = False
    identity_generation: Optional[str] = None
    is_generated: bool = False

    @property
    def type_signature(self) -> str:
        """Type with its length modifier, used to spot mismatches."""
        if self.max_length:
            return f"{self.sql_type}({self.max_length})"
        if self.sql_type == "numeric" and self.numeric_precision:
            if self.numeric_scale:
                return f"numeric({self.numeric_precision},{self.numeric_scale})"
            return f"numeric({self.numeric_precision})"
        if self.sql_type in ("ARRAY", "USER-DEFINED") and self.udt_name:
            return self.udt_name
        return self.sql_type

    @property
    def uses_sequence(self) -> bool:
        """Check if the default draws from a sequence (serial columns)."""
        return bool(self.default_expr and self.default_expr.startswith("nextval("))

    @property
    def is_writable(self) -> bool:
        """Generated columns cannot be written to directly."""
        return not self.is_generated

    def __str__(self) -> str:
        result = f"{self.name} {self.type_signature}"
        if not self.nullable:
            result += " NOT NULL"
        if self.default_expr:
            result += f" DEFAULT {self.default_expr}"
        return result


@dataclass
class TableSchema:
    """Columns and primary key of one table in one store."""

    table_name: str
    columns: List[ColumnDescriptor] = field(default_factory=list)
    primary_key_columns: Tuple[str, ...] = ()
    schema: str = "public"

    @property
    def full_name(self) -> str:
        return f"{self.schema}.{self.table_name}"

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    @property
    def has_primary_key(self) -> bool:
        return bool(self.primary_key_columns)

    def has_column(self, column_name: str) -> bool:
        return any(c.name == column_name for c in self.columns)

    def get_column(self, column_name: str) -> Optional[ColumnDescriptor]:
        for column in self.columns:
            if column.name == column_name:
                return column
        return None


class SchemaInspector:
    """Reads schema metadata from one store without modifying it."""

    TABLES_QUERY = """
        SELECT table_name
        FROM information_schema.tables
        WHERE table_schema = $1
        AND table_type = 'BASE TABLE'
        ORDER BY table_name
    """

    COLUMNS_QUERY = """
        SELECT
            c.table_name,
            c.column_name,
            c.data_type,
            c.is_nullable,
            c.column_default,
            c.character_maximum_length,
            c.numeric_precision,
            c.numeric_scale,
            c.ordinal_position,
            c.udt_name,
            c.is_identity,
            c.identity_generation,
            c.is_generated
        FROM information_schema.columns c
        WHERE c.table_schema = $1
        ORDER BY c.table_name, c.ordinal_position
    """

    PRIMARY_KEYS_QUERY = """
        SELECT tc.table_name, kcu.column_name
        FROM information_schema.table_constraints tc
        JOIN information_schema.key_column_usage kcu
            ON kcu.constraint_name = tc.constraint_name
            AND kcu.table_schema = tc.table_schema
            AND kcu.table_name = tc.table_name
        WHERE tc.constraint_type = 'PRIMARY KEY'
        AND tc.table_schema = $1
        ORDER BY tc.table_name, kcu.ordinal_position
    """

    def __init__(self, pool: ConnectionPool, schema: str = "public"):
        if schema in SYSTEM_SCHEMAS:
            raise SchemaError(f"Refusing to inspect system schema '{schema}'")
        self.pool = pool
        self.schema = schema

    async def inspect(
        self,
        table_filter: Optional[Iterable[str]] = None,
        exclude: Optional[Iterable[str]] = None,
    ) -> List[TableSchema]:
        """
        Inspect all base tables of the schema.

        Args:
            table_filter: Only return these tables (all tables when None)
            exclude: Table names to leave out

        Returns:
            TableSchema list ordered by table name
        """
        wanted = set(table_filter) if table_filter is not None else None
        excluded = set(exclude or ())

        try:
            table_rows = await self.pool.fetch(self.TABLES_QUERY, self.schema)
            column_rows = await self.pool.fetch(self.COLUMNS_QUERY, self.schema)
            pk_rows = await self.pool.fetch(self.PRIMARY_KEYS_QUERY, self.schema)
        except Exception as e:
            store = self.pool.name
            if is_permission_error(e):
                logger.error(f"Metadata query rejected on store '{store}': {e}")
                raise StorePermissionError(
                    f"Metadata query rejected on store '{store}'", cause=e
                ) from e
            if is_connectivity_error(e):
                logger.error(f"Store '{store}' unreachable during inspection: {e}")
                raise ConnectivityError(
                    f"Store '{store}' unreachable during inspection", cause=e
                ) from e
            logger.error(f"Error inspecting store '{store}': {e}")
            raise SchemaError(f"Failed to inspect store '{store}'", cause=e) from e

        tables: "OrderedDict[str, TableSchema]" = OrderedDict()
        for row in table_rows:
            name = row["table_name"]
            if wanted is not None and name not in wanted:
                continue
            if name in excluded:
                continue
            tables[name] = TableSchema(table_name=name, schema=self.schema)

        for row in column_rows:
            table = tables.get(row["table_name"])
            if table is None:
                continue
            table.columns.append(self._column_from_row(row))

        primary_keys: Dict[str, List[str]] = {}
        for row in pk_rows:
            if row["table_name"] in tables:
                primary_keys.setdefault(row["table_name"], []).append(row["column_name"])
        for name, key_columns in primary_keys.items():
            tables[name].primary_key_columns = tuple(key_columns)

        logger.debug(f"Inspected {len(tables)} table(s) on store '{self.pool.name}'")
        return list(tables.values())

    async def get_table(self, table_name: str) -> Optional[TableSchema]:
        """Inspect a single table, or None if it does not exist."""
        tables = await self.inspect(table_filter=[table_name])
        return tables[0] if tables else None

    async def table_exists(self, table_name: str) -> bool:
        """Check if a table exists."""
        query = """
            SELECT EXISTS (
                SELECT 1 FROM information_schema.tables
                WHERE table_schema = $1 AND table_name = $2
            )
        """
        return bool(await self.pool.fetchval(query, self.schema, table_name))

    @staticmethod
    def _column_from_row(row) -> ColumnDescriptor:
        return ColumnDescriptor(
            name=row["column_name"],
            sql_type=row["data_type"],
            nullable=row["is_nullable"] == "YES",
            default_expr=row["column_default"],
            max_length=row["character_maximum_length"],
            numeric_precision=row["numeric_precision"],
            numeric_scale=row["numeric_scale"],
            udt_name=row["udt_name"],
            ordinal_position=row["ordinal_position"],
            is_identity=row["is_identity"] == "YES",
            identity_generation=row["identity_generation"],
            is_generated=row["is_generated"] == "ALWAYS",
        )
