"""Read queries over the local execution cache.

Everything here reads cached rows only; no remote instance is contacted.
Daily buckets are keyed by ISO date (YYYY-MM-DD) so that filling gaps and
matching rows never depends on how a date is rendered.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import Date, Integer, cast, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from flowdeck.db.models import ExecutionLog, utc_now
from flowdeck.services.execution_status import ExecutionStatus

# Columns for list views; the JSONB payloads are only returned by detail
SUMMARY_COLUMNS = (
    ExecutionLog.id,
    ExecutionLog.instance_id,
    ExecutionLog.execution_id,
    ExecutionLog.workflow_id,
    ExecutionLog.workflow_name,
    ExecutionLog.status,
    ExecutionLog.finished,
    ExecutionLog.started_at,
    ExecutionLog.finished_at,
    ExecutionLog.duration_ms,
    ExecutionLog.mode,
    ExecutionLog.node_count,
    ExecutionLog.error_message,
    ExecutionLog.created_at,
)


@dataclass
class ExecutionFilters:
    workflow_name: str | None = None
    status: str | None = None
    search: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    limit: int = 500


def _count_status(status: ExecutionStatus) -> Any:
    return func.count().filter(ExecutionLog.status == status.value)


async def list_executions(
    db: AsyncSession, instance_id: uuid.UUID, filters: ExecutionFilters
) -> list[dict[str, Any]]:
    """Newest-first execution summaries matching the filters."""
    conditions = [ExecutionLog.instance_id == instance_id]
    if filters.workflow_name:
        conditions.append(ExecutionLog.workflow_name == filters.workflow_name)
    if filters.status:
        conditions.append(ExecutionLog.status == filters.status)
    if filters.start_date:
        conditions.append(ExecutionLog.created_at >= filters.start_date)
    if filters.end_date:
        conditions.append(ExecutionLog.created_at <= filters.end_date)
    if filters.search:
        pattern = f"%{filters.search}%"
        conditions.append(
            or_(
                ExecutionLog.workflow_name.ilike(pattern),
                ExecutionLog.error_message.ilike(pattern),
            )
        )

    last_node = ExecutionLog.execution_data["lastNodeExecuted"].astext.label(
        "last_node_executed"
    )
    result = await db.execute(
        select(*SUMMARY_COLUMNS, last_node)
        .where(*conditions)
        .order_by(ExecutionLog.created_at.desc())
        .limit(filters.limit)
    )
    return [dict(row) for row in result.mappings().all()]


async def get_execution(
    db: AsyncSession, instance_id: uuid.UUID, execution_row_id: uuid.UUID
) -> ExecutionLog | None:
    """Full cached execution, including payloads."""
    result = await db.execute(
        select(ExecutionLog).where(
            ExecutionLog.id == execution_row_id,
            ExecutionLog.instance_id == instance_id,
        )
    )
    return result.scalar_one_or_none()


async def get_execution_stats(db: AsyncSession, instance_id: uuid.UUID) -> dict[str, Any]:
    """Totals per status, mean duration and success rate for an instance."""
    result = await db.execute(
        select(
            func.count().label("total"),
            _count_status(ExecutionStatus.SUCCESS).label("success"),
            _count_status(ExecutionStatus.ERROR).label("error"),
            _count_status(ExecutionStatus.RUNNING).label("running"),
            _count_status(ExecutionStatus.WAITING).label("waiting"),
            _count_status(ExecutionStatus.CANCELED).label("canceled"),
            func.avg(ExecutionLog.duration_ms).label("avg_duration_ms"),
            func.min(ExecutionLog.created_at).label("first_execution_at"),
        ).where(ExecutionLog.instance_id == instance_id)
    )
    row = result.one()
    total = row.total or 0
    success_rate = round(row.success / total * 100, 1) if total else 0.0
    return {
        "totalExecutions": total,
        "successCount": row.success or 0,
        "errorCount": row.error or 0,
        "runningCount": row.running or 0,
        "waitingCount": row.waiting or 0,
        "canceledCount": row.canceled or 0,
        "avgDurationMs": round(row.avg_duration_ms) if row.avg_duration_ms is not None else 0,
        "successRate": success_rate,
        "firstExecutionAt": row.first_execution_at.isoformat()
        if row.first_execution_at
        else None,
    }


def fill_daily_buckets(
    counts: dict[date, dict[str, int]], today: date, days: int
) -> list[dict[str, Any]]:
    """One bucket per day from today - days through today, zeros where empty."""
    buckets = []
    for offset in range(days, -1, -1):
        day = today - timedelta(days=offset)
        stats = counts.get(day, {})
        buckets.append(
            {
                "date": day.isoformat(),
                "total": stats.get("total", 0),
                "success": stats.get("success", 0),
                "error": stats.get("error", 0),
            }
        )
    return buckets


async def get_daily_stats(
    db: AsyncSession, instance_id: uuid.UUID, days: int = 14
) -> list[dict[str, Any]]:
    """Per-day totals for the last `days` days (UTC dates)."""
    now = utc_now()
    day_col = cast(func.timezone("UTC", ExecutionLog.created_at), Date).label("day")
    result = await db.execute(
        select(
            day_col,
            func.count().label("total"),
            _count_status(ExecutionStatus.SUCCESS).label("success"),
            _count_status(ExecutionStatus.ERROR).label("error"),
        )
        .where(
            ExecutionLog.instance_id == instance_id,
            ExecutionLog.created_at >= now - timedelta(days=days),
        )
        .group_by(day_col)
        .order_by(day_col)
    )
    counts = {
        row.day: {"total": row.total, "success": row.success, "error": row.error}
        for row in result.all()
    }
    return fill_daily_buckets(counts, now.date(), days)


async def get_workflow_stats(db: AsyncSession, instance_id: uuid.UUID) -> list[dict[str, Any]]:
    """Per-workflow totals, busiest first."""
    total = func.count().label("total_executions")
    result = await db.execute(
        select(
            ExecutionLog.workflow_name,
            total,
            _count_status(ExecutionStatus.SUCCESS).label("successful"),
            _count_status(ExecutionStatus.ERROR).label("failed"),
            func.coalesce(func.round(func.avg(ExecutionLog.duration_ms)), 0)
            .cast(Integer)
            .label("avg_duration_ms"),
        )
        .where(ExecutionLog.instance_id == instance_id)
        .group_by(ExecutionLog.workflow_name)
        .order_by(total.desc())
    )
    return [dict(row) for row in result.mappings().all()]


async def list_workflow_names(db: AsyncSession, instance_id: uuid.UUID) -> list[str]:
    result = await db.execute(
        select(ExecutionLog.workflow_name)
        .where(ExecutionLog.instance_id == instance_id)
        .distinct()
        .order_by(ExecutionLog.workflow_name)
    )
    return list(result.scalars().all())
