"""Instance configuration store.

Plain CRUD over the instances table. Updating or deleting an instance
releases its tunnel so no caller keeps using stale credentials.
"""

import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flowdeck.db.models import Instance
from flowdeck.logging_config import get_logger
from flowdeck.services.encryption_service import encrypt_secret
from flowdeck.tunnels import release_tunnel

logger = get_logger(__name__)

# Columns a caller may set directly; the password goes through encryption
EDITABLE_FIELDS = (
    "name",
    "ssh_host",
    "ssh_port",
    "ssh_user",
    "ssh_private_key_path",
    "db_host",
    "db_port",
    "db_name",
    "db_user",
    "base_url",
)


class InstanceNotFoundError(Exception):
    """Raised when an instance ID does not exist."""

    def __init__(self, instance_id: uuid.UUID) -> None:
        self.instance_id = instance_id
        super().__init__(f"Instance not found: {instance_id}")


async def list_instances(db: AsyncSession) -> list[Instance]:
    result = await db.execute(select(Instance).order_by(Instance.created_at))
    return list(result.scalars().all())


async def get_instance(db: AsyncSession, instance_id: uuid.UUID) -> Instance | None:
    result = await db.execute(select(Instance).where(Instance.id == instance_id))
    return result.scalar_one_or_none()


async def create_instance(db: AsyncSession, data: dict[str, Any]) -> Instance:
    instance = Instance(**{k: v for k, v in data.items() if k in EDITABLE_FIELDS})
    instance.db_password_encrypted = encrypt_secret(data.get("db_password", ""))
    db.add(instance)
    await db.flush()
    logger.info("Instance created", instance_id=str(instance.id), name=instance.name)
    return instance


async def update_instance(
    db: AsyncSession, instance_id: uuid.UUID, data: dict[str, Any]
) -> Instance | None:
    """Apply a partial update. Returns None if the instance does not exist."""
    instance = await get_instance(db, instance_id)
    if instance is None:
        return None

    for field_name in EDITABLE_FIELDS:
        if field_name in data:
            setattr(instance, field_name, data[field_name])
    if data.get("db_password") is not None:
        instance.db_password_encrypted = encrypt_secret(data["db_password"])

    # Release only once the new row is visible to other sessions
    await db.commit()
    await release_tunnel(instance_id)
    logger.info("Instance updated", instance_id=str(instance_id))
    return instance


async def delete_instance(db: AsyncSession, instance_id: uuid.UUID) -> bool:
    """Delete an instance; cached executions and sync status cascade."""
    instance = await get_instance(db, instance_id)
    if instance is None:
        return False

    await db.delete(instance)
    await db.commit()
    await release_tunnel(instance_id)
    logger.info("Instance deleted", instance_id=str(instance_id))
    return True
