"""Instance endpoints: CRUD, connection test, manual sync and sync status.

Endpoints:
    GET    /api/instances                        (list instances)
    POST   /api/instances                        (create instance)
    GET    /api/instances/{id}                   (show instance)
    PUT    /api/instances/{id}                   (update instance, drops its tunnel)
    DELETE /api/instances/{id}                   (delete instance, drops its tunnel)
    POST   /api/instances/{id}/test-connection   (one-shot credential probe)
    POST   /api/instances/{id}/sync              (sync now)
    GET    /api/sync-status?instanceId=          (last sync outcome)

Responses never include the DB password or the private key path.
"""

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from flowdeck.db.models import Instance
from flowdeck.db.session import get_db
from flowdeck.logging_config import get_logger
from flowdeck.services import execution_cache, instance_service
from flowdeck.services.execution_poller import trigger_manual_sync
from flowdeck.services.instance_service import InstanceNotFoundError
from flowdeck.tunnels import ConnectionFailedError, probe_connection

router = APIRouter(tags=["instances"])
logger = get_logger(__name__)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InstanceCreate(_CamelModel):
    name: str = Field(min_length=1)
    ssh_host: str = Field(min_length=1)
    ssh_port: int = Field(default=22, ge=1, le=65535)
    ssh_user: str = Field(min_length=1)
    ssh_private_key_path: str = Field(min_length=1)
    db_host: str = "127.0.0.1"
    db_port: int = Field(default=5432, ge=1, le=65535)
    db_name: str = Field(min_length=1)
    db_user: str = Field(min_length=1)
    db_password: str = ""
    base_url: str = "http://localhost:5678"


class InstanceUpdate(_CamelModel):
    name: str | None = Field(default=None, min_length=1)
    ssh_host: str | None = Field(default=None, min_length=1)
    ssh_port: int | None = Field(default=None, ge=1, le=65535)
    ssh_user: str | None = Field(default=None, min_length=1)
    ssh_private_key_path: str | None = Field(default=None, min_length=1)
    db_host: str | None = None
    db_port: int | None = Field(default=None, ge=1, le=65535)
    db_name: str | None = Field(default=None, min_length=1)
    db_user: str | None = Field(default=None, min_length=1)
    db_password: str | None = None
    base_url: str | None = None


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt is not None else None


def _instance_json(instance: Instance) -> dict:
    return {
        "id": str(instance.id),
        "name": instance.name,
        "sshHost": instance.ssh_host,
        "sshPort": instance.ssh_port,
        "sshUser": instance.ssh_user,
        "dbHost": instance.db_host,
        "dbPort": instance.db_port,
        "dbName": instance.db_name,
        "dbUser": instance.db_user,
        "baseUrl": instance.base_url,
        "createdAt": _iso(instance.created_at),
        "updatedAt": _iso(instance.updated_at),
    }


async def _require_instance(db: AsyncSession, instance_id: uuid.UUID) -> Instance:
    instance = await instance_service.get_instance(db, instance_id)
    if instance is None:
        raise HTTPException(status_code=404, detail="Instance not found")
    return instance


@router.get("/instances")
async def list_instances(db: AsyncSession = Depends(get_db)) -> list[dict]:
    instances = await instance_service.list_instances(db)
    return [_instance_json(i) for i in instances]


@router.post("/instances", status_code=201)
async def create_instance(body: InstanceCreate, db: AsyncSession = Depends(get_db)) -> dict:
    instance = await instance_service.create_instance(db, body.model_dump())
    return _instance_json(instance)


@router.get("/instances/{instance_id}")
async def show_instance(instance_id: uuid.UUID, db: AsyncSession = Depends(get_db)) -> dict:
    return _instance_json(await _require_instance(db, instance_id))


@router.put("/instances/{instance_id}")
async def update_instance(
    instance_id: uuid.UUID, body: InstanceUpdate, db: AsyncSession = Depends(get_db)
) -> dict:
    instance = await instance_service.update_instance(
        db, instance_id, body.model_dump(exclude_unset=True, exclude_none=True)
    )
    if instance is None:
        raise HTTPException(status_code=404, detail="Instance not found")
    return _instance_json(instance)


@router.delete("/instances/{instance_id}")
async def delete_instance(instance_id: uuid.UUID, db: AsyncSession = Depends(get_db)) -> dict:
    if not await instance_service.delete_instance(db, instance_id):
        raise HTTPException(status_code=404, detail="Instance not found")
    return {"ok": True}


@router.post("/instances/{instance_id}/test-connection")
async def test_connection(instance_id: uuid.UUID, db: AsyncSession = Depends(get_db)) -> dict:
    instance = await _require_instance(db, instance_id)
    result = await probe_connection(instance)
    return {"success": result.success, "error": result.error}


@router.post("/instances/{instance_id}/sync")
async def sync_instance(instance_id: uuid.UUID) -> dict:
    try:
        record_count = await trigger_manual_sync(instance_id)
    except InstanceNotFoundError:
        raise HTTPException(status_code=404, detail="Instance not found") from None
    except ConnectionFailedError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e
    except Exception as e:
        logger.error("Manual sync failed", instance_id=str(instance_id), error=str(e))
        raise HTTPException(status_code=500, detail=str(e) or "Failed to sync instance") from e
    return {"ok": True, "recordCount": record_count}


@router.get("/sync-status")
async def sync_status(
    instance_id: uuid.UUID = Query(alias="instanceId"),
    db: AsyncSession = Depends(get_db),
) -> dict | None:
    status = await execution_cache.get_sync_status(db, instance_id)
    if status is None:
        return None
    return {
        "instanceId": str(status.instance_id),
        "lastSyncedAt": _iso(status.last_synced_at),
        "lastSyncSuccess": status.last_sync_success,
        "lastSyncError": status.last_sync_error,
        "lastSyncRecordCount": status.last_sync_record_count,
        "updatedAt": _iso(status.updated_at),
    }
