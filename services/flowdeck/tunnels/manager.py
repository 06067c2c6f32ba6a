"""Connection acquisition over the tunnel registry.

acquire_connection() returns a pool (AsyncEngine) for an instance, creating
the SSH tunnel on first use. Concurrent callers for the same instance share
one creation task, so a burst of requests opens exactly one SSH session.
A failed creation is reported to every waiter and forgotten, so the next
call starts from scratch.

Releasing an instance also discards a creation still in flight for it, so a
tunnel built from replaced credentials is never registered.
"""

import asyncio
import uuid
from functools import partial

import asyncssh
from sqlalchemy.ext.asyncio import AsyncEngine

from flowdeck.config import TunnelConfig
from flowdeck.db.models import Instance
from flowdeck.logging_config import get_logger
from flowdeck.tunnels.registry import TunnelEntry, TunnelRegistry
from flowdeck.tunnels.ssh import (
    ConnectionFailedError,
    close_tunnel_resources,
    create_remote_engine,
    load_client_key,
    open_forward_listener,
    open_ssh_connection,
)

logger = get_logger(__name__)


class _TunnelClient(asyncssh.SSHClient):
    """Reports loss of a managed SSH connection back to the manager."""

    def __init__(self, manager: "TunnelManager", instance_id: uuid.UUID) -> None:
        self._manager = manager
        self._instance_id = instance_id
        self._conn: asyncssh.SSHClientConnection | None = None

    def connection_made(self, conn: asyncssh.SSHClientConnection) -> None:
        self._conn = conn

    def connection_lost(self, exc: Exception | None) -> None:
        self._manager._on_connection_lost(self._instance_id, self._conn, exc)


class TunnelManager:
    """Get-or-create access to per-instance tunnels."""

    def __init__(self, config: TunnelConfig) -> None:
        self.config = config
        self.registry = TunnelRegistry(idle_timeout=config.idle_timeout_seconds)
        self._pending: dict[uuid.UUID, asyncio.Task[TunnelEntry]] = {}
        # Bumped on release; a creation started under an older value is stale
        self._generations: dict[uuid.UUID, int] = {}
        self._background: set[asyncio.Task] = set()

    async def acquire_connection(self, instance: Instance) -> AsyncEngine:
        """Return the instance's pool, opening a tunnel if none is live.

        Raises:
            ConnectionFailedError: the tunnel could not be established.
        """
        entry = self.registry.get(instance.id)
        if entry is not None:
            self.registry.touch(instance.id)
            return entry.engine

        task = self._pending.get(instance.id)
        if task is None:
            task = asyncio.create_task(
                self._create_tunnel(instance, self._generations.get(instance.id, 0)),
                name=f"tunnel-create-{instance.id}",
            )
            self._pending[instance.id] = task
            task.add_done_callback(partial(self._clear_pending, instance.id))
        else:
            logger.debug("Awaiting in-flight tunnel creation", instance_id=str(instance.id))

        entry = await asyncio.shield(task)
        self.registry.touch(instance.id)
        return entry.engine

    async def release_tunnel(self, instance_id: uuid.UUID) -> None:
        """Tear down the instance's tunnel, if any.

        Called when an instance's credentials change or it is deleted.
        """
        self._generations[instance_id] = self._generations.get(instance_id, 0) + 1
        stale = self._pending.pop(instance_id, None)
        if stale is not None:
            logger.info("Discarding in-flight tunnel creation", instance_id=str(instance_id))
            self._background.add(stale)
            stale.add_done_callback(self._background.discard)

        if await self.registry.teardown(instance_id):
            logger.info("Tunnel released", instance_id=str(instance_id))

    async def close(self) -> None:
        """Wait out in-flight creations, then tear down every tunnel."""
        if self._pending:
            await asyncio.gather(*self._pending.values(), return_exceptions=True)
        await self.registry.teardown_all()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # --- internals ---

    async def _create_tunnel(self, instance: Instance, generation: int) -> TunnelEntry:
        instance_id = instance.id
        cfg = self.config
        log = logger.bind(
            instance_id=str(instance_id), ssh_host=instance.ssh_host, ssh_port=instance.ssh_port
        )
        log.info("Opening SSH tunnel")

        ssh_conn = None
        listener = None
        engine = None
        try:
            client_key = load_client_key(instance.ssh_private_key_path)
            ssh_conn = await open_ssh_connection(
                instance,
                client_key,
                cfg,
                client_factory=partial(_TunnelClient, self, instance_id),
            )
            listener = await open_forward_listener(ssh_conn, instance, cfg.local_bind_host)
            local_port = listener.get_port()
            engine = create_remote_engine(
                instance,
                local_port,
                host=cfg.local_bind_host,
                pool_size=cfg.pool_size,
                pool_recycle=cfg.pool_recycle_seconds,
            )
        except Exception as e:
            message = str(e) or type(e).__name__
            log.error("Failed to open SSH tunnel", error=message)
            await close_tunnel_resources(instance_id, engine, listener, ssh_conn)
            raise ConnectionFailedError(instance_id, message) from e

        if self._generations.get(instance_id, 0) != generation:
            log.info("Instance changed while connecting, closing new tunnel")
            await close_tunnel_resources(instance_id, engine, listener, ssh_conn)
            raise ConnectionFailedError(instance_id, "Instance changed while connecting")

        entry = TunnelEntry(
            ssh_conn=ssh_conn, listener=listener, engine=engine, local_port=local_port
        )
        self.registry.put(instance_id, entry)
        log.info("SSH tunnel established", local_port=local_port)
        return entry

    def _clear_pending(self, instance_id: uuid.UUID, task: asyncio.Task) -> None:
        if self._pending.get(instance_id) is task:
            del self._pending[instance_id]
        if not task.cancelled():
            # Waiters re-raise the exception; this only marks it retrieved
            task.exception()

    def _on_connection_lost(
        self,
        instance_id: uuid.UUID,
        conn: asyncssh.SSHClientConnection | None,
        exc: Exception | None,
    ) -> None:
        entry = self.registry.get(instance_id)
        if entry is None or entry.ssh_conn is not conn:
            return

        if exc is not None:
            logger.warning("SSH connection lost", instance_id=str(instance_id), error=str(exc))
        else:
            logger.info("SSH connection closed", instance_id=str(instance_id))

        task = asyncio.get_running_loop().create_task(self.registry.teardown(instance_id, entry))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
