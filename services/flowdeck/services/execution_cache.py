"""Writes into the local execution cache and per-instance sync status.

Execution rows are upserted on (instance_id, execution_id). On conflict only
the columns that change while an execution progresses are overwritten;
started_at and created_at keep the values from the first insert.
"""

import json
import uuid
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.postgresql.dml import Insert
from sqlalchemy.ext.asyncio import AsyncSession

from flowdeck.db.models import ExecutionLog, SyncStatus, utc_now
from flowdeck.services.execution_status import normalize_status

# Overwritten when a cached execution is seen again
MUTABLE_COLUMNS = (
    "status",
    "finished",
    "finished_at",
    "duration_ms",
    "error_message",
    "execution_data",
    "workflow_data",
)


def _as_utc(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _as_json(value: Any) -> Any:
    # asyncpg hands json/jsonb columns back as text
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def _as_int(value: Any) -> int | None:
    return int(value) if value is not None else None


def _as_str(value: Any) -> str | None:
    return str(value) if value is not None else None


def row_to_values(instance_id: uuid.UUID, row: Mapping[str, Any]) -> dict[str, Any]:
    """Convert one remote execution row into cache column values."""
    created_at = _as_utc(row["created_at"])
    if created_at is None:
        raise ValueError(f"Remote execution {row.get('execution_id')} has no created_at")

    return {
        "instance_id": instance_id,
        "execution_id": str(row["execution_id"]),
        "workflow_id": str(row["workflow_id"]),
        "workflow_name": str(row["workflow_name"]),
        "status": normalize_status(_as_str(row.get("status"))).value,
        "finished": bool(row.get("finished")),
        "started_at": _as_utc(row.get("started_at")),
        "finished_at": _as_utc(row.get("finished_at")),
        "duration_ms": _as_int(row.get("duration_ms")),
        "mode": _as_str(row.get("mode")),
        "node_count": _as_int(row.get("node_count")),
        "error_message": _as_str(row.get("error_message")),
        "execution_data": _as_json(row.get("execution_data")),
        "workflow_data": _as_json(row.get("workflow_data")),
        "created_at": created_at,
    }


def build_execution_upsert(values: Sequence[dict[str, Any]]) -> Insert:
    """INSERT .. ON CONFLICT (instance_id, execution_id) DO UPDATE for a batch."""
    stmt = pg_insert(ExecutionLog).values(list(values))
    return stmt.on_conflict_do_update(
        index_elements=[ExecutionLog.instance_id, ExecutionLog.execution_id],
        set_={name: stmt.excluded[name] for name in MUTABLE_COLUMNS},
    )


async def upsert_executions(
    db: AsyncSession, instance_id: uuid.UUID, rows: Sequence[Mapping[str, Any]]
) -> int:
    """Upsert one batch of remote rows. Returns the number of rows written."""
    if not rows:
        return 0
    values = [row_to_values(instance_id, row) for row in rows]
    await db.execute(build_execution_upsert(values))
    return len(values)


async def get_sync_status(db: AsyncSession, instance_id: uuid.UUID) -> SyncStatus | None:
    result = await db.execute(select(SyncStatus).where(SyncStatus.instance_id == instance_id))
    return result.scalar_one_or_none()


async def record_sync_success(
    db: AsyncSession, instance_id: uuid.UUID, synced_at: datetime, record_count: int
) -> None:
    """Advance the cursor and clear any previous error."""
    values = {
        "last_synced_at": synced_at,
        "last_sync_success": True,
        "last_sync_error": None,
        "last_sync_record_count": record_count,
        "updated_at": utc_now(),
    }
    stmt = pg_insert(SyncStatus).values(instance_id=instance_id, **values)
    await db.execute(
        stmt.on_conflict_do_update(index_elements=[SyncStatus.instance_id], set_=values)
    )


async def record_sync_failure(db: AsyncSession, instance_id: uuid.UUID, error: str) -> None:
    """Record a failed attempt. last_synced_at is left as it was."""
    values = {
        "last_sync_success": False,
        "last_sync_error": error,
        "updated_at": utc_now(),
    }
    stmt = pg_insert(SyncStatus).values(instance_id=instance_id, **values)
    await db.execute(
        stmt.on_conflict_do_update(index_elements=[SyncStatus.instance_id], set_=values)
    )
