"""
Additive schema operations for pgmirror.

Turns a SchemaDiff into CREATE TABLE / ADD COLUMN statements and applies them
to the target store one at a time. Each statement runs in its own transaction
with a bounded statement timeout and is guarded with IF NOT EXISTS, so a
failure never undoes earlier statements and re-running the same diff is a
no-op. Existing columns are never altered or dropped.
"""

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from ..database.connection import ConnectionPool
from ..database.identifiers import quote_columns, quote_identifier, quote_table
from ..database.introspection import ColumnDescriptor, TableSchema
from ..exceptions import SchemaApplicationError, SchemaError, ValidationError
from .differ import SchemaDiff


logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    """Types of schema changes."""

    CREATE_TABLE = "create_table"
    ADD_COLUMN = "add_column"


class OperationMode(str, Enum):
    """Schema operation modes."""

    APPLY = "apply"        # Execute statements against the target
    DRY_RUN = "dry_run"    # Generate SQL but don't execute


# information_schema data_type -> target DDL type
TYPE_MAP: Dict[str, str] = {
    "character varying": "VARCHAR",
    "character": "CHAR",
    "text": "TEXT",
    "smallint": "SMALLINT",
    "integer": "INTEGER",
    "bigint": "BIGINT",
    "numeric": "NUMERIC",
    "real": "REAL",
    "double precision": "DOUBLE PRECISION",
    "boolean": "BOOLEAN",
    "date": "DATE",
    "timestamp without time zone": "TIMESTAMP",
    "timestamp with time zone": "TIMESTAMPTZ",
    "time without time zone": "TIME",
    "time with time zone": "TIMETZ",
    "interval": "INTERVAL",
    "json": "JSON",
    "jsonb": "JSONB",
    "uuid": "UUID",
    "bytea": "BYTEA",
    "inet": "INET",
    "cidr": "CIDR",
    "money": "MONEY",
}

# udt_name of array element types -> target DDL type
UDT_MAP: Dict[str, str] = {
    "int2": "SMALLINT",
    "int4": "INTEGER",
    "int8": "BIGINT",
    "text": "TEXT",
    "varchar": "VARCHAR",
    "bpchar": "CHAR",
    "bool": "BOOLEAN",
    "float4": "REAL",
    "float8": "DOUBLE PRECISION",
    "numeric": "NUMERIC",
    "uuid": "UUID",
    "json": "JSON",
    "jsonb": "JSONB",
    "date": "DATE",
    "timestamp": "TIMESTAMP",
    "timestamptz": "TIMESTAMPTZ",
}

SERIAL_TYPES: Dict[str, str] = {
    "smallint": "SMALLSERIAL",
    "integer": "SERIAL",
    "bigint": "BIGSERIAL",
}

_PLAIN_TYPE = re.compile(r"^[a-z][a-z0-9 ]*$")


def map_column_type(column: ColumnDescriptor) -> str:
    """Map a source column's catalog type to a target DDL type."""
    data_type = column.sql_type.lower()

    if data_type == "array":
        element = (column.udt_name or "").lstrip("_")
        mapped = UDT_MAP.get(element)
        if mapped is None:
            mapped = quote_identifier(element)
        return f"{mapped}[]"

    if data_type == "user-defined":
        # Enums, extension types; must already exist on the target
        return quote_identifier(column.udt_name or "")

    mapped = TYPE_MAP.get(data_type)
    if mapped is None:
        if not _PLAIN_TYPE.match(data_type):
            raise SchemaError(f"Unsupported column type '{column.sql_type}' for {column.name}")
        mapped = data_type.upper()

    if mapped in ("VARCHAR", "CHAR") and column.max_length:
        return f"{mapped}({column.max_length})"
    if mapped == "NUMERIC" and column.numeric_precision:
        if column.numeric_scale:
            return f"NUMERIC({column.numeric_precision},{column.numeric_scale})"
        return f"NUMERIC({column.numeric_precision})"
    return mapped


def column_definition(column: ColumnDescriptor, for_new_table: bool) -> str:
    """
    Build a column definition for CREATE TABLE or ADD COLUMN.

    Sequence defaults reference sequences that only exist on the source, so
    new tables get SERIAL types and added columns drop the default. Added
    columns are only NOT NULL when a default can fill existing rows.
    """
    name = quote_identifier(column.name)
    data_type = column.sql_type.lower()

    if column.is_identity:
        generation = (column.identity_generation or "BY DEFAULT").upper()
        return f"{name} {map_column_type(column)} GENERATED {generation} AS IDENTITY"

    if column.uses_sequence:
        if for_new_table and data_type in SERIAL_TYPES:
            return f"{name} {SERIAL_TYPES[data_type]}"
        logger.warning(
            f"Dropping sequence default of column {column.name}; "
            f"the source sequence does not exist on the target"
        )
        definition = f"{name} {map_column_type(column)}"
        if for_new_table and not column.nullable:
            definition += " NOT NULL"
        return definition

    definition = f"{name} {map_column_type(column)}"
    if column.default_expr:
        definition += f" DEFAULT {column.default_expr}"
    if not column.nullable and (for_new_table or column.default_expr):
        definition += " NOT NULL"
    return definition


@dataclass
class SchemaChange:
    """Represents a schema change operation."""

    change_type: ChangeType
    schema: str
    table: str
    description: str
    sql: str
    target_object: Optional[str] = None

    # Execution results
    executed: bool = False
    execution_time_ms: Optional[float] = None
    error: Optional[str] = None

    @property
    def full_table_name(self) -> str:
        return f"{self.schema}.{self.table}"

    @property
    def has_error(self) -> bool:
        return self.error is not None

    @property
    def change_id(self) -> str:
        target = self.target_object or self.table
        return f"{self.change_type.value}_{self.schema}_{self.table}_{target}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "change_type": self.change_type.value,
            "table": self.table,
            "target": self.target_object,
            "description": self.description,
            "sql": self.sql,
            "executed": self.executed,
            "error": self.error,
            "execution_time_ms": self.execution_time_ms,
        }


class SchemaApplier:
    """Applies the additive part of a SchemaDiff to the target store."""

    def __init__(
        self,
        pool: ConnectionPool,
        schema: str = "public",
        operation_mode: OperationMode = OperationMode.APPLY,
        timeout_seconds: float = 5.0,
    ):
        self.pool = pool
        self.schema = schema
        self.operation_mode = operation_mode
        self.timeout_seconds = timeout_seconds

    def create_table_change(self, table: TableSchema) -> SchemaChange:
        """Build a CREATE TABLE IF NOT EXISTS change from a source table."""
        definitions = [
            column_definition(c, for_new_table=True)
            for c in sorted(table.columns, key=lambda c: c.ordinal_position)
        ]
        if table.primary_key_columns:
            definitions.append(f"PRIMARY KEY ({quote_columns(table.primary_key_columns)})")

        body = ",\n    ".join(definitions)
        sql = (
            f"CREATE TABLE IF NOT EXISTS {quote_table(table.table_name, self.schema)} (\n"
            f"    {body}\n)"
        )
        return SchemaChange(
            change_type=ChangeType.CREATE_TABLE,
            schema=self.schema,
            table=table.table_name,
            description=f"Create table {table.table_name} ({len(table.columns)} columns)",
            sql=sql,
            target_object=table.table_name,
        )

    def add_column_change(self, table_name: str, column: ColumnDescriptor) -> SchemaChange:
        """Build an ALTER TABLE ... ADD COLUMN IF NOT EXISTS change."""
        definition = column_definition(column, for_new_table=False)
        sql = (
            f"ALTER TABLE {quote_table(table_name, self.schema)} "
            f"ADD COLUMN IF NOT EXISTS {definition}"
        )
        return SchemaChange(
            change_type=ChangeType.ADD_COLUMN,
            schema=self.schema,
            table=table_name,
            description=f"Add column {column.name} to {table_name}",
            sql=sql,
            target_object=column.name,
        )

    def plan(self, diff: SchemaDiff) -> List[SchemaChange]:
        """Turn a diff into ordered changes without executing them."""
        changes = []
        for table in diff.missing_tables:
            changes.append(
                self._build(ChangeType.CREATE_TABLE, table.table_name, self.create_table_change, table)
            )
        for table_name, columns in diff.missing_columns.items():
            for column in sorted(columns, key=lambda c: c.ordinal_position):
                changes.append(
                    self._build(
                        ChangeType.ADD_COLUMN, table_name, self.add_column_change, table_name, column
                    )
                )
        return changes

    async def apply(self, diff: SchemaDiff) -> List[SchemaChange]:
        """
        Apply every change in the diff, each independently.

        Failed statements are recorded on their SchemaChange and logged; they
        never stop the remaining statements.
        """
        changes = self.plan(diff)
        for change in changes:
            if change.has_error:
                continue
            await self._execute_change(change)

        summary = self.get_execution_summary(changes)
        logger.info(
            f"Schema changes: {summary['successful']}/{summary['total_operations']} applied, "
            f"{summary['failed']} failed"
        )
        return changes

    def _build(self, change_type: ChangeType, table_name: str, builder, *args) -> SchemaChange:
        try:
            return builder(*args)
        except (SchemaError, ValidationError) as e:
            logger.error(f"Cannot build schema change for {table_name}: {e}")
            return SchemaChange(
                change_type=change_type,
                schema=self.schema,
                table=table_name,
                description=f"Unbuildable change for {table_name}",
                sql="",
                error=str(e),
            )

    async def _execute_change(self, change: SchemaChange) -> SchemaChange:
        """Execute one change in its own transaction."""
        if self.operation_mode == OperationMode.DRY_RUN:
            change.description = f"DRY RUN: {change.description}"
            logger.info(f"DRY RUN: Would execute {change.change_id}")
            logger.info(f"SQL: {change.sql.strip()}")
            return change

        start_time = time.time()
        timeout_ms = int(self.timeout_seconds * 1000)
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(f"SET LOCAL statement_timeout = {timeout_ms}")
                    await conn.execute(change.sql, timeout=self.timeout_seconds)
            change.executed = True
            logger.info(f"Applied {change.change_id}")

        except Exception as e:
            error = SchemaApplicationError(change.table, change.sql, cause=e)
            change.executed = False
            change.error = str(error)
            logger.error(f"Failed to apply {change.change_id}: {e}")

        finally:
            change.execution_time_ms = (time.time() - start_time) * 1000

        return change

    def get_execution_summary(self, changes: List[SchemaChange]) -> Dict[str, Any]:
        """Get summary of execution results."""
        total = len(changes)
        successful = sum(1 for c in changes if c.executed)
        failed = sum(1 for c in changes if c.error)
        total_time = sum(c.execution_time_ms or 0 for c in changes)

        return {
            "total_operations": total,
            "successful": successful,
            "failed": failed,
            "total_execution_time_ms": total_time,
            "failed_operations": [
                {"change_id": c.change_id, "error": c.error} for c in changes if c.error
            ],
        }
