"""
Unit tests for the reconciliation driver, run end to end against fake stores.
"""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from pgmirror.driver import ReconciliationDriver, ReconciliationReport, run_mirror
from pgmirror.exceptions import ConnectivityError, StorePermissionError
from pgmirror.schema.operations import ChangeType
from pgmirror.sync.reconciler import ReconciliationResult, SyncDirection, TableStatus
from tests.fakes import CLIENT_COLUMNS, QUOTE_COLUMNS, client_rows


@pytest.fixture
def driver(source_store, target_store):
    return ReconciliationDriver(source_store, target_store)


class TestRun:
    """Full runs."""

    @pytest.mark.asyncio
    async def test_first_copy_of_clients(self, driver, source_store, target_store):
        source_store.add_table("clients", CLIENT_COLUMNS, rows=client_rows([1, 2, 3]))
        target_store.add_table("clients", CLIENT_COLUMNS)

        report = await driver.run(["clients"])

        result = report.get_table("clients")
        assert result.rows_copied == 3
        assert result.direction == SyncDirection.SOURCE_TO_TARGET
        assert sorted(target_store.tables["clients"].rows) == [(1,), (2,), (3,)]
        assert report.verification["clients"] == {"source": 3, "target": 3, "match": True}
        assert not report.has_failures

    @pytest.mark.asyncio
    async def test_quotes_with_equal_counts_are_left_alone(self, driver, source_store, target_store):
        source_store.add_table("quotes", QUOTE_COLUMNS, rows=[{"id": i} for i in range(1, 11)])
        target_store.add_table("quotes", QUOTE_COLUMNS, rows=[{"id": i} for i in range(1, 11)])

        report = await driver.run(["quotes"])

        result = report.get_table("quotes")
        assert result.direction == SyncDirection.NONE
        assert result.rows_copied == 0
        assert target_store.executed == []

    @pytest.mark.asyncio
    async def test_missing_schema_is_created_before_copying(self, driver, source_store, target_store):
        source_store.add_table("clients", CLIENT_COLUMNS, rows=client_rows([1, 2]))
        source_store.add_table("quotes", QUOTE_COLUMNS, rows=[{"id": 1, "client_id": 1}])
        target_store.add_table("clients", CLIENT_COLUMNS[:2])

        report = await driver.run(["clients", "quotes"])

        assert [c.change_type for c in report.schema_changes] == [
            ChangeType.CREATE_TABLE, ChangeType.ADD_COLUMN,
        ]
        assert all(c.executed for c in report.schema_changes)
        assert target_store.tables["clients"].column_names == ["id", "name", "email"]
        assert target_store.row_count("quotes") == 1
        assert target_store.tables["clients"].rows[(2,)]["email"] == "c2@example.com"
        assert [t.table_name for t in report.tables] == ["clients", "quotes"]

    @pytest.mark.asyncio
    async def test_empty_table_list_reconciles_schema_only(self, driver, source_store, target_store):
        source_store.add_table("clients", CLIENT_COLUMNS, rows=client_rows([1, 2, 3]))
        source_store.add_table("quotes", QUOTE_COLUMNS, rows=[{"id": 1, "client_id": 1}])
        target_store.add_table("clients", CLIENT_COLUMNS)

        for tables in ([], None):
            report = await driver.run(tables)

            assert report.tables == []
            assert report.total_rows_copied == 0

        assert "quotes" in target_store.tables
        assert target_store.row_count("clients") == 0
        assert target_store.row_count("quotes") == 0

    @pytest.mark.asyncio
    async def test_tables_run_in_caller_order(self, driver, source_store, target_store):
        for name in ("alpha", "beta", "gamma"):
            source_store.add_table(name, [("id", "integer", False)])
            target_store.add_table(name, [("id", "integer", False)])

        report = await driver.run(["gamma", "alpha", "beta"])

        assert [t.table_name for t in report.tables] == ["gamma", "alpha", "beta"]

    @pytest.mark.asyncio
    async def test_table_modes_from_config_objects(self, driver, source_store, target_store):
        source_store.add_table("quotes", QUOTE_COLUMNS, rows=[{"id": 1}, {"id": 2}])
        target_store.add_table("quotes", QUOTE_COLUMNS)

        report = await driver.run([SimpleNamespace(name="quotes", mode="schema_only")])

        assert report.get_table("quotes").status == TableStatus.SKIPPED
        assert target_store.row_count("quotes") == 0

    @pytest.mark.asyncio
    async def test_running_twice_is_idempotent(self, driver, source_store, target_store):
        source_store.add_table("clients", CLIENT_COLUMNS, rows=client_rows(range(1, 6)))
        source_store.add_table("quotes", QUOTE_COLUMNS)

        first = await driver.run(["clients", "quotes"])
        target_before = {n: dict(t.rows) for n, t in target_store.tables.items()}
        second = await driver.run(["clients", "quotes"])

        assert first.total_rows_copied == 5
        assert second.total_rows_copied == 0
        assert second.schema_changes == []
        assert {n: dict(t.rows) for n, t in target_store.tables.items()} == target_before

    @pytest.mark.asyncio
    async def test_one_failing_row_is_isolated(self, driver, source_store, target_store):
        source_store.add_table("clients", CLIENT_COLUMNS, rows=client_rows(range(1, 101)))
        target_store.add_table("clients", CLIENT_COLUMNS)
        target_store.fail_keys["clients"] = {42}

        report = await driver.run(["clients"])

        assert report.total_rows_copied == 99
        assert report.total_rows_failed == 1
        assert report.has_failures
        assert report.verification_mismatches == ["clients"]

    @pytest.mark.asyncio
    async def test_table_failures_do_not_stop_the_run(self, driver, source_store, target_store):
        source_store.add_table("audit_log", [("message", "text")], primary_key=(), rows=[{"message": "x"}])
        target_store.add_table("audit_log", [("message", "text")], primary_key=())
        source_store.add_table("clients", CLIENT_COLUMNS, rows=client_rows([1]))
        target_store.add_table("clients", CLIENT_COLUMNS)

        report = await driver.run(["audit_log", "ghost", "clients"])

        assert report.get_table("audit_log").status == TableStatus.SKIPPED
        assert "no primary key" in report.get_table("audit_log").skipped_reason
        assert report.get_table("ghost").skipped_reason == "table not found on source and target"
        assert report.get_table("clients").rows_copied == 1
        assert report.tables_skipped == 2

    @pytest.mark.asyncio
    async def test_failed_schema_change_is_reported(self, driver, source_store, target_store):
        source_store.add_table("clients", CLIENT_COLUMNS, rows=client_rows([1]))
        target_store.add_table("clients", CLIENT_COLUMNS[:2])
        failing = driver.applier.add_column_change(
            "clients", (await driver.source_inspector.get_table("clients")).get_column("email")
        ).sql
        target_store.fail_ddl.add(failing)

        report = await driver.run(["clients"])

        assert report.schema_changes_failed == 1
        assert report.has_failures
        assert report.get_table("clients").rows_copied == 1
        assert target_store.tables["clients"].rows[(1,)]["name"] == "Client 1"

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self, source_store, target_store):
        source_store.add_table("clients", CLIENT_COLUMNS, rows=client_rows([1, 2]))
        source_store.add_table("quotes", QUOTE_COLUMNS)
        target_store.add_table("clients", CLIENT_COLUMNS)
        driver = ReconciliationDriver(source_store, target_store, dry_run=True)

        report = await driver.run(["clients", "quotes"])

        assert report.dry_run
        assert "quotes" not in target_store.tables
        assert target_store.executed == []
        assert report.get_table("clients").status == TableStatus.DRY_RUN
        assert "would be created" in report.get_table("quotes").skipped_reason
        assert report.verification == {}


class TestCancellation:
    """Cooperative cancellation between tables."""

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, driver, source_store, target_store):
        source_store.add_table("clients", CLIENT_COLUMNS, rows=client_rows([1]))
        target_store.add_table("clients", CLIENT_COLUMNS)
        cancel_event = asyncio.Event()
        cancel_event.set()

        report = await driver.run(["clients"], cancel_event)

        assert report.cancelled
        assert report.tables == []
        assert target_store.row_count("clients") == 0

    @pytest.mark.asyncio
    async def test_cancel_between_tables_keeps_finished_work(self, driver, source_store, target_store):
        for name in ("first", "second"):
            source_store.add_table(name, [("id", "integer", False)], rows=[{"id": 1}])
            target_store.add_table(name, [("id", "integer", False)])
        cancel_event = asyncio.Event()

        original = driver.reconciler.reconcile

        async def reconcile_then_cancel(*args, **kwargs):
            result = await original(*args, **kwargs)
            cancel_event.set()
            return result

        driver.reconciler.reconcile = reconcile_then_cancel

        report = await driver.run(["first", "second"], cancel_event)

        assert report.cancelled
        assert [t.table_name for t in report.tables] == ["first"]
        assert target_store.row_count("first") == 1
        assert target_store.row_count("second") == 0


class TestFatalErrors:
    """Errors that end the run."""

    @pytest.mark.asyncio
    async def test_unreachable_target_is_fatal(self, driver, target_store):
        target_store.unreachable = True

        with pytest.raises(ConnectivityError):
            await driver.run(["clients"])

    @pytest.mark.asyncio
    async def test_catalog_permission_is_fatal(self, driver, source_store):
        source_store.deny_catalog = True

        with pytest.raises(StorePermissionError):
            await driver.run(["clients"])

    @pytest.mark.asyncio
    async def test_run_mirror_closes_pools(self, connection_config, monkeypatch):
        run = AsyncMock(return_value=ReconciliationReport())
        monkeypatch.setattr(ReconciliationDriver, "run", run)
        closed = []

        async def fake_close_all(self):
            closed.append(True)

        monkeypatch.setattr("pgmirror.database.connection.DatabaseManager.close_all", fake_close_all)

        report = await run_mirror(connection_config, connection_config, ["clients"], batch_size=10)

        assert isinstance(report, ReconciliationReport)
        run.assert_awaited_once()
        assert closed == [True]


class TestReport:
    """Report totals and JSON output."""

    def test_totals_and_json(self):
        report = ReconciliationReport(
            tables=[
                ReconciliationResult(table_name="clients", rows_copied=3, status=TableStatus.COPIED),
                ReconciliationResult(table_name="quotes", rows_copied=5, rows_failed=1, status=TableStatus.PARTIAL),
                ReconciliationResult(table_name="sessions", status=TableStatus.FAILED),
                ReconciliationResult(table_name="audit_log", status=TableStatus.SKIPPED),
            ],
            elapsed_seconds=1.23456,
        )

        data = json.loads(report.to_json())

        assert data["totals"] == {
            "tables": 4,
            "rows_copied": 8,
            "rows_failed": 1,
            "tables_failed": 1,
            "tables_skipped": 1,
            "schema_changes": 0,
            "schema_changes_failed": 0,
        }
        assert data["elapsed_seconds"] == 1.235
        assert data["cancelled"] is False
        assert [t["table"] for t in data["tables"]] == ["clients", "quotes", "sessions", "audit_log"]
        assert report.has_failures

    def test_clean_report_has_no_failures(self):
        report = ReconciliationReport(
            tables=[ReconciliationResult(table_name="clients", status=TableStatus.IN_SYNC)]
        )
        assert not report.has_failures
