"""Cached execution endpoints.

Endpoints:
    GET /api/executions?instanceId=                      (filtered list, newest first)
    GET /api/executions/{id}/detail?instanceId=          (one execution with payloads)
    GET /api/executions/stats?instanceId=                (totals and success rate)
    GET /api/executions/daily?instanceId=&days=          (per-day counts, zero filled)
    GET /api/executions/workflows?instanceId=            (per-workflow counts)
    GET /api/workflow-names?instanceId=                  (distinct workflow names)

All reads hit the local cache; no tunnel is opened here.
"""

import uuid
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from flowdeck.db.models import ExecutionLog
from flowdeck.db.session import get_db
from flowdeck.services import execution_queries
from flowdeck.services.execution_queries import ExecutionFilters

router = APIRouter(tags=["executions"])


def _jsonable(row: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in row.items():
        if isinstance(value, datetime):
            out[key] = value.isoformat()
        elif isinstance(value, uuid.UUID):
            out[key] = str(value)
        else:
            out[key] = value
    return out


def _summary_json(row: dict[str, Any]) -> dict[str, Any]:
    data = _jsonable(row)
    data["execution_data"] = None
    data["workflow_data"] = None
    return data


def _detail_json(execution: ExecutionLog) -> dict[str, Any]:
    return _jsonable(
        {
            "id": execution.id,
            "instance_id": execution.instance_id,
            "execution_id": execution.execution_id,
            "workflow_id": execution.workflow_id,
            "workflow_name": execution.workflow_name,
            "status": execution.status,
            "finished": execution.finished,
            "started_at": execution.started_at,
            "finished_at": execution.finished_at,
            "duration_ms": execution.duration_ms,
            "mode": execution.mode,
            "node_count": execution.node_count,
            "error_message": execution.error_message,
            "execution_data": execution.execution_data,
            "workflow_data": execution.workflow_data,
            "created_at": execution.created_at,
        }
    )


@router.get("/executions")
async def list_executions(
    instance_id: uuid.UUID = Query(alias="instanceId"),
    limit: int = Query(default=500, ge=1, le=5000),
    search: str | None = None,
    workflow_name: str | None = Query(default=None, alias="workflowName"),
    status: str | None = None,
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    db: AsyncSession = Depends(get_db),
) -> list[dict[str, Any]]:
    filters = ExecutionFilters(
        workflow_name=workflow_name or None,
        status=status or None,
        search=search or None,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
    )
    rows = await execution_queries.list_executions(db, instance_id, filters)
    return [_summary_json(row) for row in rows]


@router.get("/executions/stats")
async def execution_stats(
    instance_id: uuid.UUID = Query(alias="instanceId"),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await execution_queries.get_execution_stats(db, instance_id)


@router.get("/executions/daily")
async def daily_stats(
    instance_id: uuid.UUID = Query(alias="instanceId"),
    days: int = Query(default=14, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
) -> list[dict[str, Any]]:
    return await execution_queries.get_daily_stats(db, instance_id, days)


@router.get("/executions/workflows")
async def workflow_stats(
    instance_id: uuid.UUID = Query(alias="instanceId"),
    db: AsyncSession = Depends(get_db),
) -> list[dict[str, Any]]:
    return await execution_queries.get_workflow_stats(db, instance_id)


@router.get("/executions/{execution_id}/detail")
async def execution_detail(
    execution_id: uuid.UUID,
    instance_id: uuid.UUID = Query(alias="instanceId"),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    execution = await execution_queries.get_execution(db, instance_id, execution_id)
    if execution is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    return _detail_json(execution)


@router.get("/workflow-names")
async def workflow_names(
    instance_id: uuid.UUID = Query(alias="instanceId"),
    db: AsyncSession = Depends(get_db),
) -> list[str]:
    return await execution_queries.list_workflow_names(db, instance_id)
