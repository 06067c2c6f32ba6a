"""One-shot credential check for an instance.

Opens a throwaway tunnel and single-connection pool, runs a liveness query
and closes everything again. The tunnel registry is never involved, so a
probe leaves no managed tunnel behind whatever the outcome.
"""

from dataclasses import dataclass

from sqlalchemy import text

from flowdeck.config import TunnelConfig
from flowdeck.db.models import Instance
from flowdeck.logging_config import get_logger
from flowdeck.tunnels.ssh import (
    close_tunnel_resources,
    create_remote_engine,
    load_client_key,
    open_forward_listener,
    open_ssh_connection,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    success: bool
    error: str | None = None


async def probe_connection(instance: Instance, config: TunnelConfig) -> ProbeResult:
    """Check that the instance's SSH and database credentials work right now."""
    ssh_conn = None
    listener = None
    engine = None
    try:
        client_key = load_client_key(instance.ssh_private_key_path)
        ssh_conn = await open_ssh_connection(instance, client_key, config)
        listener = await open_forward_listener(ssh_conn, instance, config.local_bind_host)
        engine = create_remote_engine(
            instance,
            listener.get_port(),
            host=config.local_bind_host,
            pool_size=1,
            connect_timeout=config.probe_db_connect_timeout_seconds,
        )
        async with engine.connect() as conn:
            result = await conn.execute(text("SELECT 1 AS ok"))
            if result.scalar_one() != 1:
                raise RuntimeError("Unexpected query result")
    except Exception as e:
        message = str(e) or type(e).__name__
        logger.warning("Connection probe failed", instance_id=str(instance.id), error=message)
        return ProbeResult(success=False, error=message)
    finally:
        await close_tunnel_resources(instance.id, engine, listener, ssh_conn)

    logger.info("Connection probe succeeded", instance_id=str(instance.id))
    return ProbeResult(success=True)
