"""
SSH tunnel layer for flowdeck.

Provides init_tunnels() / close_tunnels() for app lifespan and the
collaborator functions the API and poller use: acquire_connection(),
release_tunnel() and probe_connection().
"""

from __future__ import annotations

import uuid

from sqlalchemy.ext.asyncio import AsyncEngine

from flowdeck.config import settings
from flowdeck.db.models import Instance
from flowdeck.logging_config import get_logger
from flowdeck.tunnels.manager import TunnelManager
from flowdeck.tunnels.probe import ProbeResult
from flowdeck.tunnels.probe import probe_connection as _probe_connection
from flowdeck.tunnels.ssh import ConnectionFailedError

__all__ = [
    "ConnectionFailedError",
    "ProbeResult",
    "acquire_connection",
    "close_tunnels",
    "get_tunnel_manager",
    "init_tunnels",
    "probe_connection",
    "release_tunnel",
]

logger = get_logger(__name__)

# Module-level manager instance
_manager: TunnelManager | None = None


def init_tunnels() -> None:
    """Create the tunnel manager. Called during app startup (lifespan)."""
    global _manager  # noqa: PLW0603
    _manager = TunnelManager(settings.tunnel)
    logger.info(
        "Tunnel manager initialized",
        idle_timeout_seconds=settings.tunnel.idle_timeout_seconds,
        pool_size=settings.tunnel.pool_size,
    )


async def close_tunnels() -> None:
    """Tear down every tunnel. Called during app shutdown (lifespan)."""
    global _manager  # noqa: PLW0603
    if _manager is not None:
        logger.info("Closing all SSH tunnels", count=len(_manager.registry))
        await _manager.close()
        _manager = None


def get_tunnel_manager() -> TunnelManager:
    """Return the tunnel manager. Raises if not initialized."""
    if _manager is None:
        raise RuntimeError("Tunnel manager not initialized, call init_tunnels() first")
    return _manager


async def acquire_connection(instance: Instance) -> AsyncEngine:
    return await get_tunnel_manager().acquire_connection(instance)


async def release_tunnel(instance_id: uuid.UUID) -> None:
    """Drop the instance's tunnel. A no-op when the manager is not running."""
    if _manager is not None:
        await _manager.release_tunnel(instance_id)


async def probe_connection(instance: Instance) -> ProbeResult:
    return await _probe_connection(instance, settings.tunnel)
