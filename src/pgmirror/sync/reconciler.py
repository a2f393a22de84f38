"""
Row-count driven data reconciliation for a single table.

The store holding more rows is treated as ahead and its rows are upserted,
keyed by primary key, into the other store. This is a heuristic rather than
a content comparison:

- equal counts are reported as in sync even if row contents differ;
- deletions are never propagated, rows removed on one side come back on the
  next run from the side that still has them.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ..database.connection import ConnectionPool
from ..database.identifiers import quote_columns, quote_identifier, quote_table
from ..database.introspection import TableSchema
from ..exceptions import AmbiguousPrimaryKeyError, RowUpsertError, ValidationError
from .counter import RowCounter, UNKNOWN_COUNT


logger = logging.getLogger(__name__)

# Failed keys kept per table in the report; all failures are still counted
MAX_REPORTED_FAILURES = 100


class SyncDirection(str, Enum):
    """Which way rows were copied for a table."""

    SOURCE_TO_TARGET = "source_to_target"
    TARGET_TO_SOURCE = "target_to_source"
    NONE = "none"


class SyncMode(str, Enum):
    """How the copy direction of a table is chosen."""

    AUTO = "auto"                          # Greater row count wins
    SOURCE_TO_TARGET = "source_to_target"  # Only copy when source is ahead
    TARGET_TO_SOURCE = "target_to_source"  # Only copy when target is ahead
    SCHEMA_ONLY = "schema_only"            # Never copy rows


class ConflictStrategy(str, Enum):
    """What to do when a copied row's key already exists."""

    UPDATE = "update"  # Copy source overwrites every non-key column
    IGNORE = "ignore"  # Existing row is kept


class TableStatus(str, Enum):
    """Outcome of reconciling one table."""

    IN_SYNC = "in_sync"
    COPIED = "copied"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"
    DRY_RUN = "dry_run"


@dataclass
class ReconciliationResult:
    """Result of reconciling one table."""

    table_name: str
    direction: SyncDirection = SyncDirection.NONE
    rows_copied: int = 0
    rows_failed: int = 0
    source_count: int = UNKNOWN_COUNT
    target_count: int = UNKNOWN_COUNT
    status: TableStatus = TableStatus.IN_SYNC
    skipped_reason: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    failed_keys: List[Dict[str, Any]] = field(default_factory=list)
    sequences_reset: List[str] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def has_failures(self) -> bool:
        return self.rows_failed > 0 or self.status == TableStatus.FAILED

    def record_failure(self, key: Dict[str, Any], error: Exception) -> None:
        self.rows_failed += 1
        if len(self.failed_keys) < MAX_REPORTED_FAILURES:
            self.failed_keys.append({k: _jsonable(v) for k, v in key.items()})
            self.errors.append(str(error))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table_name,
            "status": self.status.value,
            "direction": self.direction.value,
            "source_count": self.source_count,
            "target_count": self.target_count,
            "rows_copied": self.rows_copied,
            "rows_failed": self.rows_failed,
            "skipped_reason": self.skipped_reason,
            "errors": list(self.errors),
            "failed_keys": list(self.failed_keys),
            "sequences_reset": list(self.sequences_reset),
            "duration_ms": round(self.duration_ms, 1),
        }


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


class DataReconciler:
    """Copies rows of one table from the store that is ahead to the other."""

    def __init__(
        self,
        source: ConnectionPool,
        target: ConnectionPool,
        schema: str = "public",
        batch_size: int = 50,
        statement_timeout: float = 5.0,
        conflict_strategy: ConflictStrategy = ConflictStrategy.UPDATE,
        dry_run: bool = False,
    ):
        if batch_size < 1:
            raise ValidationError(f"batch_size must be positive, got {batch_size}")
        self.source = source
        self.target = target
        self.schema = schema
        self.batch_size = batch_size
        self.statement_timeout = statement_timeout
        self.conflict_strategy = conflict_strategy
        self.dry_run = dry_run
        self.source_counter = RowCounter(source, schema, statement_timeout)
        self.target_counter = RowCounter(target, schema, statement_timeout)

    async def reconcile(
        self,
        table_name: str,
        primary_key_columns: Sequence[str],
        source_table: Optional[TableSchema] = None,
        target_table: Optional[TableSchema] = None,
        mode: SyncMode = SyncMode.AUTO,
    ) -> ReconciliationResult:
        """
        Reconcile one table.

        Args:
            table_name: Table to reconcile
            primary_key_columns: Key used for ordering and conflict detection
            source_table: Source schema snapshot, used to pick columns
            target_table: Target schema snapshot, used to pick columns
            mode: Direction policy for this table

        Returns:
            ReconciliationResult; never raises for per-table problems
        """
        start_time = time.time()
        result = ReconciliationResult(table_name=table_name)

        try:
            await self._reconcile(
                result, table_name, tuple(primary_key_columns), source_table, target_table, mode
            )
        except AmbiguousPrimaryKeyError as e:
            logger.warning(f"Skipping {table_name}: {e.reason}")
            result.status = TableStatus.SKIPPED
            result.skipped_reason = str(e)
        except Exception as e:
            logger.error(f"Reconciliation of {table_name} failed: {e}")
            result.errors.append(str(e))
            result.status = TableStatus.FAILED
        finally:
            result.duration_ms = (time.time() - start_time) * 1000

        logger.info(
            f"{table_name}: {result.status.value} ({result.direction.value}), "
            f"{result.rows_copied} copied, {result.rows_failed} failed"
        )
        return result

    async def _reconcile(
        self,
        result: ReconciliationResult,
        table_name: str,
        primary_key: tuple,
        source_table: Optional[TableSchema],
        target_table: Optional[TableSchema],
        mode: SyncMode,
    ) -> None:
        self._check_primary_key(table_name, primary_key, source_table, target_table)

        result.source_count = await self.source_counter.count(table_name)
        result.target_count = await self.target_counter.count(table_name)

        if mode == SyncMode.SCHEMA_ONLY:
            result.status = TableStatus.SKIPPED
            result.skipped_reason = "schema only"
            return

        if UNKNOWN_COUNT in (result.source_count, result.target_count):
            result.status = TableStatus.FAILED
            result.errors.append("Row count unavailable on at least one store")
            return

        if result.source_count == result.target_count:
            result.status = TableStatus.IN_SYNC
            return

        if result.source_count > result.target_count:
            direction = SyncDirection.SOURCE_TO_TARGET
        else:
            direction = SyncDirection.TARGET_TO_SOURCE

        if mode != SyncMode.AUTO and mode.value != direction.value:
            result.status = TableStatus.SKIPPED
            result.skipped_reason = (
                f"direction pinned to {mode.value} but the other store has more rows"
            )
            return

        result.direction = direction
        if direction == SyncDirection.SOURCE_TO_TARGET:
            copy_from, copy_to = self.source, self.target
            from_table, to_table = source_table, target_table
            pending = result.source_count - result.target_count
        else:
            copy_from, copy_to = self.target, self.source
            from_table, to_table = target_table, source_table
            pending = result.target_count - result.source_count

        if self.dry_run:
            result.status = TableStatus.DRY_RUN
            result.skipped_reason = (
                f"would upsert {max(result.source_count, result.target_count)} rows "
                f"({pending} missing) {direction.value}"
            )
            return

        columns = self._copy_columns(primary_key, from_table, to_table)
        overriding = bool(
            to_table
            and any(
                c.is_identity and (c.identity_generation or "").upper() == "ALWAYS"
                for c in to_table.columns
            )
        )

        await self._copy_rows(result, copy_from, copy_to, table_name, primary_key, columns, overriding)

        if result.rows_copied and to_table is not None:
            await self._reset_sequences(result, copy_to, to_table)

        if result.rows_failed == 0 and not result.errors:
            result.status = TableStatus.COPIED
        elif result.rows_copied:
            result.status = TableStatus.PARTIAL
        else:
            result.status = TableStatus.FAILED

    def _check_primary_key(
        self,
        table_name: str,
        primary_key: tuple,
        source_table: Optional[TableSchema],
        target_table: Optional[TableSchema],
    ) -> None:
        if not primary_key:
            raise AmbiguousPrimaryKeyError(table_name, "no primary key")
        for table in (source_table, target_table):
            if table is None:
                continue
            if set(table.primary_key_columns) != set(primary_key):
                raise AmbiguousPrimaryKeyError(
                    table_name,
                    f"primary key {list(table.primary_key_columns)} on one store "
                    f"does not match {list(primary_key)}",
                )
            missing = [c for c in primary_key if not table.has_column(c)]
            if missing:
                raise AmbiguousPrimaryKeyError(table_name, f"key columns {missing} not found")

    def _copy_columns(
        self,
        primary_key: tuple,
        from_table: Optional[TableSchema],
        to_table: Optional[TableSchema],
    ) -> Optional[List[str]]:
        """Writable columns present in both stores, in copy-source order."""
        if from_table is None or to_table is None:
            return None

        columns = []
        for column in from_table.columns:
            target_column = to_table.get_column(column.name)
            if target_column is None:
                logger.warning(
                    f"Column {from_table.table_name}.{column.name} missing on the copy "
                    f"target, not copied"
                )
                continue
            if column.is_writable and target_column.is_writable:
                columns.append(column.name)

        for key in primary_key:
            if key not in columns:
                raise AmbiguousPrimaryKeyError(
                    from_table.table_name, f"key column {key} is not writable"
                )
        return columns

    def build_select_sql(self, table_name: str, primary_key: Sequence[str], columns: Optional[Sequence[str]]) -> str:
        """Paged read ordered by primary key ascending."""
        column_list = quote_columns(columns) if columns else "*"
        return (
            f"SELECT {column_list} FROM {quote_table(table_name, self.schema)} "
            f"ORDER BY {quote_columns(primary_key)} LIMIT $1 OFFSET $2"
        )

    def build_upsert_sql(
        self,
        table_name: str,
        columns: Sequence[str],
        primary_key: Sequence[str],
        overriding_system_value: bool = False,
    ) -> str:
        """INSERT ... ON CONFLICT (key) DO UPDATE/NOTHING for one row."""
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        overriding = " OVERRIDING SYSTEM VALUE" if overriding_system_value else ""
        sql = (
            f"INSERT INTO {quote_table(table_name, self.schema)} ({quote_columns(columns)})"
            f"{overriding} VALUES ({placeholders}) "
            f"ON CONFLICT ({quote_columns(primary_key)}) "
        )

        updates = [c for c in columns if c not in primary_key]
        if self.conflict_strategy == ConflictStrategy.IGNORE or not updates:
            return sql + "DO NOTHING"

        assignments = ", ".join(
            f"{quote_identifier(c)} = EXCLUDED.{quote_identifier(c)}" for c in updates
        )
        return sql + f"DO UPDATE SET {assignments}"

    async def _copy_rows(
        self,
        result: ReconciliationResult,
        copy_from: ConnectionPool,
        copy_to: ConnectionPool,
        table_name: str,
        primary_key: tuple,
        columns: Optional[List[str]],
        overriding: bool,
    ) -> None:
        select_sql = self.build_select_sql(table_name, primary_key, columns)
        upsert_sql = self.build_upsert_sql(table_name, columns, primary_key, overriding) if columns else None
        offset = 0
        batch_number = 0

        while True:
            try:
                rows = await copy_from.fetch(select_sql, self.batch_size, offset)
            except Exception as e:
                logger.error(f"Reading {table_name} from store '{copy_from.name}' at offset {offset} failed: {e}")
                result.errors.append(f"Read failed at offset {offset}: {e}")
                return

            if not rows:
                return

            if upsert_sql is None:
                columns = list(rows[0].keys())
                upsert_sql = self.build_upsert_sql(table_name, columns, primary_key, overriding)

            batch_number += 1
            async with copy_to.acquire() as conn:
                for row in rows:
                    values = [row[c] for c in columns]
                    try:
                        await conn.execute(upsert_sql, *values, timeout=self.statement_timeout)
                        result.rows_copied += 1
                    except Exception as e:
                        key = {k: row[k] for k in primary_key}
                        error = RowUpsertError(table_name, key, cause=e)
                        logger.warning(str(error))
                        result.record_failure(key, error)

            logger.debug(
                f"{table_name}: batch {batch_number} done "
                f"({result.rows_copied} copied, {result.rows_failed} failed)"
            )

            if len(rows) < self.batch_size:
                return
            offset += len(rows)

    async def _reset_sequences(
        self, result: ReconciliationResult, pool: ConnectionPool, table: TableSchema
    ) -> None:
        """Advance serial/identity sequences past the copied keys."""
        qualified = quote_table(table.table_name, self.schema)
        for column in table.columns:
            if not (column.uses_sequence or column.is_identity):
                continue
            quoted_column = quote_identifier(column.name)
            query = (
                f"SELECT setval(pg_get_serial_sequence($1, $2), "
                f"COALESCE((SELECT MAX({quoted_column}) FROM {qualified}), 1), "
                f"(SELECT MAX({quoted_column}) FROM {qualified}) IS NOT NULL)"
            )
            try:
                value = await pool.fetchval(query, qualified, column.name, timeout=self.statement_timeout)
            except Exception as e:
                logger.warning(f"Could not reset sequence for {table.table_name}.{column.name}: {e}")
                continue
            if value is None:
                logger.debug(f"{table.table_name}.{column.name} has no owned sequence")
            else:
                result.sequences_reset.append(column.name)
