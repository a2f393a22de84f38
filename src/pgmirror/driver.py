"""
Reconciliation driver for pgmirror.

Sequences a whole run: connect both stores, inspect, diff, apply additive
schema changes to the target, then reconcile each requested table in order
and collect everything into a ReconciliationReport.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .database.connection import ConnectionConfig, DatabaseManager, ConnectionPool
from .database.introspection import SchemaInspector, TableSchema
from .exceptions import MirrorError
from .schema.differ import SchemaDiff, SchemaDiffer
from .schema.operations import OperationMode, SchemaApplier, SchemaChange
from .sync.counter import RowCounter
from .sync.reconciler import (
    ConflictStrategy,
    DataReconciler,
    ReconciliationResult,
    SyncMode,
    TableStatus,
)


logger = logging.getLogger(__name__)

TableRequest = Union[str, Any]


@dataclass
class ReconciliationReport:
    """Outcome of one reconciliation run."""

    tables: List[ReconciliationResult] = field(default_factory=list)
    schema_changes: List[SchemaChange] = field(default_factory=list)
    schema_diff: Optional[SchemaDiff] = None
    verification: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    cancelled: bool = False
    dry_run: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    elapsed_seconds: float = 0.0

    @property
    def total_rows_copied(self) -> int:
        return sum(t.rows_copied for t in self.tables)

    @property
    def total_rows_failed(self) -> int:
        return sum(t.rows_failed for t in self.tables)

    @property
    def tables_failed(self) -> int:
        return sum(1 for t in self.tables if t.status == TableStatus.FAILED)

    @property
    def tables_skipped(self) -> int:
        return sum(1 for t in self.tables if t.status == TableStatus.SKIPPED)

    @property
    def schema_changes_failed(self) -> int:
        return sum(1 for c in self.schema_changes if c.has_error)

    @property
    def verification_mismatches(self) -> List[str]:
        return [name for name, v in self.verification.items() if not v["match"]]

    @property
    def has_failures(self) -> bool:
        """True when anything in the run failed or was only partly copied."""
        return bool(
            self.total_rows_failed
            or self.tables_failed
            or self.schema_changes_failed
            or any(t.status == TableStatus.PARTIAL for t in self.tables)
        )

    def get_table(self, table_name: str) -> Optional[ReconciliationResult]:
        for result in self.tables:
            if result.table_name == table_name:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
            "totals": {
                "tables": len(self.tables),
                "rows_copied": self.total_rows_copied,
                "rows_failed": self.total_rows_failed,
                "tables_failed": self.tables_failed,
                "tables_skipped": self.tables_skipped,
                "schema_changes": len(self.schema_changes),
                "schema_changes_failed": self.schema_changes_failed,
            },
            "schema_diff": self.schema_diff.to_dict() if self.schema_diff else None,
            "schema_changes": [c.to_dict() for c in self.schema_changes],
            "tables": [t.to_dict() for t in self.tables],
            "verification": self.verification,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)


def _normalize_tables(tables: Iterable[TableRequest]) -> List[Tuple[str, SyncMode]]:
    """Accept plain names or objects with ``name`` and ``mode`` attributes."""
    normalized = []
    for table in tables:
        if isinstance(table, str):
            normalized.append((table, SyncMode.AUTO))
        else:
            normalized.append((table.name, SyncMode(getattr(table, "mode", SyncMode.AUTO))))
    return normalized


class ReconciliationDriver:
    """Runs schema and data reconciliation between a source and a target store."""

    def __init__(
        self,
        source: ConnectionPool,
        target: ConnectionPool,
        schema: str = "public",
        batch_size: int = 50,
        statement_timeout: float = 5.0,
        conflict_strategy: ConflictStrategy = ConflictStrategy.UPDATE,
        dry_run: bool = False,
        verify: bool = True,
        include_tables: Optional[Sequence[str]] = None,
        exclude_tables: Optional[Sequence[str]] = None,
    ):
        self.source = source
        self.target = target
        self.schema = schema
        self.statement_timeout = statement_timeout
        self.dry_run = dry_run
        self.verify = verify
        self.include_tables = list(include_tables) if include_tables else None
        self.exclude_tables = list(exclude_tables or ())

        self.source_inspector = SchemaInspector(source, schema)
        self.target_inspector = SchemaInspector(target, schema)
        self.differ = SchemaDiffer()
        self.applier = SchemaApplier(
            target,
            schema,
            OperationMode.DRY_RUN if dry_run else OperationMode.APPLY,
            statement_timeout,
        )
        self.reconciler = DataReconciler(
            source,
            target,
            schema=schema,
            batch_size=batch_size,
            statement_timeout=statement_timeout,
            conflict_strategy=conflict_strategy,
            dry_run=dry_run,
        )

    @classmethod
    def from_config(cls, config, source: ConnectionPool, target: ConnectionPool) -> "ReconciliationDriver":
        """Build a driver from a MirrorConfig and two pools."""
        sync = config.sync
        return cls(
            source,
            target,
            schema=sync.schema_name,
            batch_size=sync.batch_size,
            statement_timeout=sync.statement_timeout,
            conflict_strategy=ConflictStrategy(sync.conflict_strategy),
            dry_run=sync.dry_run,
            verify=sync.verify,
            include_tables=sync.include_tables,
            exclude_tables=sync.exclude_tables,
        )

    async def connect(self) -> None:
        """Connect both stores; ConnectivityError here ends the run."""
        await self.source.initialize()
        await self.target.initialize()

    async def inspect(self) -> Tuple[List[TableSchema], List[TableSchema]]:
        source_tables = await self.source_inspector.inspect(self.include_tables, self.exclude_tables)
        target_tables = await self.target_inspector.inspect(self.include_tables, self.exclude_tables)
        return source_tables, target_tables

    async def reconcile_schema(self) -> Tuple[SchemaDiff, List[SchemaChange]]:
        """Diff both stores and apply the additive changes to the target."""
        await self.connect()
        source_tables, target_tables = await self.inspect()
        diff = self.differ.diff(source_tables, target_tables)
        changes = await self.applier.apply(diff)
        return diff, changes

    async def run(
        self,
        tables: Iterable[TableRequest],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ReconciliationReport:
        """
        Run a full reconciliation.

        Args:
            tables: Tables to reconcile in order, as names or objects with
                ``name`` and ``mode``. Schema changes cover every
                inspected table; rows are only copied for these, and an
                empty list reconciles schema alone
            cancel_event: Checked between tables; when set, the run stops
                and keeps the work already done

        Returns:
            ReconciliationReport

        Raises:
            ConnectivityError: A store cannot be reached at start
            StorePermissionError: Catalog queries are rejected
        """
        start_time = time.time()
        report = ReconciliationReport(dry_run=self.dry_run)

        await self.connect()
        source_tables, target_tables = await self.inspect()

        report.schema_diff = self.differ.diff(source_tables, target_tables)
        report.schema_changes = await self.applier.apply(report.schema_diff)

        if any(c.executed for c in report.schema_changes):
            try:
                target_tables = await self.target_inspector.inspect(
                    self.include_tables, self.exclude_tables
                )
            except MirrorError as e:
                logger.error(f"Re-inspection of target failed, using the earlier snapshot: {e}")

        sources = {t.table_name: t for t in source_tables}
        targets = {t.table_name: t for t in target_tables}

        requested = _normalize_tables(tables or ())
        if not requested:
            logger.warning("No tables requested, data reconciliation skipped")

        logger.info(f"Reconciling {len(requested)} table(s)")
        for index, (table_name, mode) in enumerate(requested, start=1):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(
                    f"Cancellation requested, stopping before {table_name} "
                    f"({index - 1}/{len(requested)} tables done)"
                )
                report.cancelled = True
                break

            logger.info(f"[{index}/{len(requested)}] {table_name} ({mode.value})")
            result = await self._reconcile_table(
                table_name, mode, sources.get(table_name), targets.get(table_name)
            )
            report.tables.append(result)

        if self.verify and not self.dry_run and not report.cancelled:
            report.verification = await self.verify_counts([t.table_name for t in report.tables])

        report.elapsed_seconds = time.time() - start_time
        logger.info(
            f"Run finished in {report.elapsed_seconds:.1f}s: "
            f"{report.total_rows_copied} rows copied, {report.total_rows_failed} failed, "
            f"{report.tables_failed} table(s) failed, {report.tables_skipped} skipped"
        )
        return report

    async def _reconcile_table(
        self,
        table_name: str,
        mode: SyncMode,
        source_table: Optional[TableSchema],
        target_table: Optional[TableSchema],
    ) -> ReconciliationResult:
        missing = [
            store
            for store, table in (("source", source_table), ("target", target_table))
            if table is None
        ]
        if missing:
            reason = f"table not found on {' and '.join(missing)}"
            if self.dry_run and missing == ["target"]:
                reason += " (would be created)"
            logger.warning(f"Skipping {table_name}: {reason}")
            return ReconciliationResult(
                table_name=table_name, status=TableStatus.SKIPPED, skipped_reason=reason
            )

        return await self.reconciler.reconcile(
            table_name,
            source_table.primary_key_columns,
            source_table=source_table,
            target_table=target_table,
            mode=mode,
        )

    async def verify_counts(self, table_names: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        """Recount every table on both stores after the run."""
        source_counts = await RowCounter(self.source, self.schema, self.statement_timeout).count_rows(table_names)
        target_counts = await RowCounter(self.target, self.schema, self.statement_timeout).count_rows(table_names)

        verification = {}
        for name in table_names:
            source_count = source_counts[name]
            target_count = target_counts[name]
            verification[name] = {
                "source": source_count,
                "target": target_count,
                "match": source_count == target_count and source_count >= 0,
            }
        matched = sum(1 for v in verification.values() if v["match"])
        logger.info(f"Verification: {matched}/{len(verification)} table(s) have matching counts")
        return verification


async def run_mirror(
    source_config: ConnectionConfig,
    target_config: ConnectionConfig,
    tables: Iterable[TableRequest],
    cancel_event: Optional[asyncio.Event] = None,
    **options: Any,
) -> ReconciliationReport:
    """Open both stores, run one reconciliation and release the pools."""
    async with DatabaseManager() as manager:
        source = manager.add_database("source", source_config)
        target = manager.add_database("target", target_config)
        driver = ReconciliationDriver(source, target, **options)
        return await driver.run(tables, cancel_event)
