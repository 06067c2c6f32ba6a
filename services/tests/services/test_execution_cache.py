"""Tests for execution cache writes: row conversion and upsert statements."""

import json
import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.dialects import postgresql

from flowdeck.services.execution_cache import (
    MUTABLE_COLUMNS,
    build_execution_upsert,
    record_sync_failure,
    record_sync_success,
    row_to_values,
    upsert_executions,
)

INSTANCE_ID = uuid.UUID("0190a0e4-0000-7000-8000-000000000001")


def _remote_row(**overrides) -> dict:
    row = {
        "execution_id": 1042,
        "workflow_id": "wf-7",
        "workflow_name": "Nightly export",
        "status": "success",
        "finished": True,
        "started_at": datetime(2026, 3, 1, 10, 0, 0),
        "finished_at": datetime(2026, 3, 1, 10, 0, 4),
        "duration_ms": 4000,
        "mode": "trigger",
        "node_count": 6,
        "error_message": None,
        "execution_data": {"lastNodeExecuted": "Write File"},
        "workflow_data": {"nodes": []},
        "created_at": datetime(2026, 3, 1, 10, 0, 0, tzinfo=UTC),
    }
    row.update(overrides)
    return row


def _sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


class TestRowToValues:
    def test_basic_conversion(self):
        values = row_to_values(INSTANCE_ID, _remote_row())

        assert values["instance_id"] == INSTANCE_ID
        assert values["execution_id"] == "1042"
        assert values["status"] == "success"
        assert values["finished"] is True
        assert values["duration_ms"] == 4000
        assert values["execution_data"] == {"lastNodeExecuted": "Write File"}

    def test_status_is_normalized(self):
        assert row_to_values(INSTANCE_ID, _remote_row(status="CRASHED"))["status"] == "error"
        assert row_to_values(INSTANCE_ID, _remote_row(status="bogus"))["status"] == "error"

    def test_naive_timestamps_are_utc(self):
        values = row_to_values(INSTANCE_ID, _remote_row())

        assert values["started_at"] == datetime(2026, 3, 1, 10, 0, 0, tzinfo=UTC)
        assert values["finished_at"].tzinfo is UTC

    def test_iso_string_timestamps(self):
        values = row_to_values(
            INSTANCE_ID, _remote_row(created_at="2026-03-01T10:00:00+00:00", finished_at=None)
        )

        assert values["created_at"] == datetime(2026, 3, 1, 10, 0, tzinfo=UTC)
        assert values["finished_at"] is None

    def test_json_text_payloads_are_decoded(self):
        values = row_to_values(
            INSTANCE_ID,
            _remote_row(execution_data=json.dumps({"lastNodeExecuted": "HTTP Request"})),
        )

        assert values["execution_data"] == {"lastNodeExecuted": "HTTP Request"}

    def test_missing_optional_columns(self):
        row = _remote_row()
        for key in ("mode", "node_count", "duration_ms", "error_message"):
            del row[key]

        values = row_to_values(INSTANCE_ID, row)

        assert values["mode"] is None
        assert values["node_count"] is None

    def test_missing_created_at_raises(self):
        with pytest.raises(ValueError, match="no created_at"):
            row_to_values(INSTANCE_ID, _remote_row(created_at=None))


class TestBuildExecutionUpsert:
    def test_conflict_target_is_instance_and_execution(self):
        sql = _sql(build_execution_upsert([row_to_values(INSTANCE_ID, _remote_row())]))

        assert "ON CONFLICT (instance_id, execution_id) DO UPDATE SET" in sql

    def test_only_mutable_columns_are_overwritten(self):
        sql = _sql(build_execution_upsert([row_to_values(INSTANCE_ID, _remote_row())]))
        set_clause = sql.split("DO UPDATE SET", 1)[1]

        for column in MUTABLE_COLUMNS:
            assert f"{column} = excluded.{column}" in set_clause
        for column in ("started_at", "created_at", "workflow_name", "mode", "node_count"):
            assert f"{column} = excluded.{column}" not in set_clause


class TestUpsertExecutions:
    async def test_empty_batch_skips_database(self):
        db = AsyncMock()

        assert await upsert_executions(db, INSTANCE_ID, []) == 0
        db.execute.assert_not_awaited()

    async def test_batch_is_one_statement(self):
        db = AsyncMock()
        rows = [_remote_row(execution_id=i) for i in range(3)]

        assert await upsert_executions(db, INSTANCE_ID, rows) == 3
        db.execute.assert_awaited_once()


class TestSyncStatusWrites:
    async def test_success_advances_cursor(self):
        db = AsyncMock()
        synced_at = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

        await record_sync_success(db, INSTANCE_ID, synced_at, 12)

        sql = _sql(db.execute.call_args.args[0])
        set_clause = sql.split("DO UPDATE SET", 1)[1]
        assert "last_synced_at" in set_clause
        assert "last_sync_error" in set_clause

    async def test_failure_leaves_cursor_alone(self):
        db = AsyncMock()

        await record_sync_failure(db, INSTANCE_ID, "Connection refused")

        sql = _sql(db.execute.call_args.args[0])
        assert "ON CONFLICT (instance_id) DO UPDATE SET" in sql
        assert "last_synced_at" not in sql
        assert "last_sync_success" in sql
