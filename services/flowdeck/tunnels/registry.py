"""Registry of live SSH tunnels, keyed by instance ID.

The registry is the single owner of tunnel resources. Callers go through
get/put/touch/teardown; nothing outside this module holds the SSH
connection or listener of an installed entry.

Each entry carries an idle timer (a loop.call_later handle). Every touch
reschedules it; when it fires the entry is torn down, unless that entry has
already been replaced or removed.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field

import asyncssh
from sqlalchemy.ext.asyncio import AsyncEngine

from flowdeck.logging_config import get_logger
from flowdeck.tunnels.ssh import close_tunnel_resources

logger = get_logger(__name__)


@dataclass
class TunnelEntry:
    """A live SSH connection, its forwarding listener and the pool behind it."""

    ssh_conn: asyncssh.SSHClientConnection
    listener: asyncssh.SSHListener
    engine: AsyncEngine
    local_port: int
    last_used: float = field(default_factory=time.monotonic)
    idle_handle: asyncio.TimerHandle | None = field(default=None, repr=False)


class TunnelRegistry:
    """Map of instance ID to TunnelEntry with idle eviction."""

    def __init__(self, idle_timeout: float) -> None:
        self.idle_timeout = idle_timeout
        self._entries: dict[uuid.UUID, TunnelEntry] = {}
        self._evictions: set[asyncio.Task] = set()

    def __contains__(self, instance_id: uuid.UUID) -> bool:
        return instance_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def instance_ids(self) -> list[uuid.UUID]:
        return list(self._entries)

    def get(self, instance_id: uuid.UUID) -> TunnelEntry | None:
        return self._entries.get(instance_id)

    def put(self, instance_id: uuid.UUID, entry: TunnelEntry) -> None:
        """Install an entry and start its idle timer."""
        previous = self._entries.get(instance_id)
        if previous is not None and previous is not entry:
            logger.warning("Replacing existing tunnel", instance_id=str(instance_id))
            self._spawn_teardown(instance_id, previous, force=True)
        self._entries[instance_id] = entry
        self._schedule_idle(instance_id, entry)

    def touch(self, instance_id: uuid.UUID) -> None:
        """Reset the idle window. No-op if the instance has no tunnel."""
        entry = self._entries.get(instance_id)
        if entry is None:
            return
        entry.last_used = time.monotonic()
        self._schedule_idle(instance_id, entry)

    async def evict_idle(self, instance_id: uuid.UUID, entry: TunnelEntry) -> None:
        """Tear down an entry whose idle timer fired."""
        if self._entries.get(instance_id) is not entry:
            return
        logger.info(
            "Idle timeout, closing tunnel",
            instance_id=str(instance_id),
            idle_seconds=round(time.monotonic() - entry.last_used, 1),
        )
        await self.teardown(instance_id, entry)

    async def teardown(self, instance_id: uuid.UUID, entry: TunnelEntry | None = None) -> bool:
        """Remove an entry and close its pool, listener and SSH connection.

        With `entry`, only that exact entry is torn down. Returns False when
        there was nothing to tear down.
        """
        current = self._entries.get(instance_id)
        if current is None or (entry is not None and current is not entry):
            return False

        del self._entries[instance_id]
        await self._close(instance_id, current)
        return True

    async def teardown_all(self) -> None:
        """Tear down every tunnel (process shutdown)."""
        for instance_id in list(self._entries):
            await self.teardown(instance_id)
        if self._evictions:
            await asyncio.gather(*self._evictions, return_exceptions=True)

    # --- internals ---

    async def _close(self, instance_id: uuid.UUID, entry: TunnelEntry) -> None:
        if entry.idle_handle is not None:
            entry.idle_handle.cancel()
            entry.idle_handle = None
        await close_tunnel_resources(instance_id, entry.engine, entry.listener, entry.ssh_conn)
        logger.info("Tunnel closed", instance_id=str(instance_id), local_port=entry.local_port)

    def _schedule_idle(self, instance_id: uuid.UUID, entry: TunnelEntry) -> None:
        if entry.idle_handle is not None:
            entry.idle_handle.cancel()
        loop = asyncio.get_running_loop()
        entry.idle_handle = loop.call_later(
            self.idle_timeout, self._spawn_teardown, instance_id, entry
        )

    def _spawn_teardown(
        self, instance_id: uuid.UUID, entry: TunnelEntry, force: bool = False
    ) -> None:
        if force:
            coro = self._close(instance_id, entry)
        else:
            coro = self.evict_idle(instance_id, entry)
        task = asyncio.get_running_loop().create_task(coro)
        self._evictions.add(task)
        task.add_done_callback(self._evictions.discard)
