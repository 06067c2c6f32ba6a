"""SSH and remote-pool primitives shared by the tunnel manager and the probe.

A tunnel is three resources opened in order and closed in reverse:
an asyncssh client connection, a local listener forwarding each accepted
socket through a direct-tcpip channel to the instance's database, and a
SQLAlchemy async engine pointed at the listener's port.
"""

import asyncio
import uuid
from collections.abc import Callable

import asyncssh
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from flowdeck.config import TunnelConfig
from flowdeck.db.models import Instance
from flowdeck.logging_config import get_logger
from flowdeck.services.encryption_service import decrypt_secret

logger = get_logger(__name__)


class ConnectionFailedError(Exception):
    """Raised when a tunnel to an instance cannot be established.

    Covers unreadable keys, SSH connect/auth failures, listener bind and
    forward failures. `message` carries the underlying cause.
    """

    def __init__(self, instance_id: uuid.UUID, message: str) -> None:
        self.instance_id = instance_id
        self.message = message
        super().__init__(f"Failed to connect to instance {instance_id}: {message}")


def load_client_key(path: str) -> asyncssh.SSHKey:
    """Read the instance's private key from disk."""
    try:
        return asyncssh.read_private_key(path)
    except (OSError, asyncssh.KeyImportError) as e:
        raise ValueError(f"Failed to read SSH private key at {path}: {e}") from e


async def open_ssh_connection(
    instance: Instance,
    client_key: asyncssh.SSHKey,
    config: TunnelConfig,
    client_factory: Callable[[], asyncssh.SSHClient] | None = None,
) -> asyncssh.SSHClientConnection:
    """Connect to the instance's SSH endpoint with public key auth only."""
    options = asyncssh.SSHClientConnectionOptions(
        username=instance.ssh_user,
        client_keys=[client_key],
        known_hosts=config.known_hosts or None,
        agent_path=None,
        preferred_auth="publickey",
        keepalive_interval=config.keepalive_interval_seconds,
        keepalive_count_max=config.keepalive_count_max,
        connect_timeout=config.connect_timeout_seconds,
    )
    return await asyncio.wait_for(
        asyncssh.connect(
            instance.ssh_host,
            port=instance.ssh_port,
            options=options,
            client_factory=client_factory,
        ),
        timeout=config.connect_timeout_seconds,
    )


async def open_forward_listener(
    conn: asyncssh.SSHClientConnection, instance: Instance, bind_host: str
) -> asyncssh.SSHListener:
    """Bind an ephemeral local port forwarding to the instance's database.

    asyncssh splices each accepted socket with its channel and closes both
    sides when either one ends.
    """
    return await conn.forward_local_port(bind_host, 0, instance.db_host, instance.db_port)


def create_remote_engine(
    instance: Instance,
    local_port: int,
    *,
    host: str,
    pool_size: int,
    pool_recycle: int = -1,
    connect_timeout: float | None = None,
) -> AsyncEngine:
    """Build an async engine for the instance database behind a local listener."""
    url = URL.create(
        "postgresql+asyncpg",
        username=instance.db_user,
        password=decrypt_secret(instance.db_password_encrypted),
        host=host,
        port=local_port,
        database=instance.db_name,
    )
    connect_args = {}
    if connect_timeout is not None:
        connect_args["timeout"] = connect_timeout
    return create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=0,
        pool_recycle=pool_recycle,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


async def close_tunnel_resources(
    instance_id: uuid.UUID,
    engine: AsyncEngine | None,
    listener: asyncssh.SSHListener | None,
    ssh_conn: asyncssh.SSHClientConnection | None,
) -> None:
    """Close engine, listener and SSH connection; each step runs regardless of the others."""
    if engine is not None:
        try:
            await engine.dispose()
        except Exception as e:
            logger.warning("Failed to dispose remote pool", instance_id=str(instance_id), error=str(e))

    if listener is not None:
        try:
            listener.close()
            await listener.wait_closed()
        except Exception as e:
            logger.warning(
                "Failed to close forwarding listener", instance_id=str(instance_id), error=str(e)
            )

    if ssh_conn is not None:
        try:
            ssh_conn.close()
            await ssh_conn.wait_closed()
        except Exception as e:
            logger.warning(
                "Failed to close SSH connection", instance_id=str(instance_id), error=str(e)
            )
