"""Shared fixtures for tunnel tests.

No real SSH or database is involved: the SSH primitives are patched where
the manager imports them, and each opened listener reports a fresh port.
"""

import asyncio
import itertools
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest


def make_listener(port: int) -> MagicMock:
    listener = MagicMock()
    listener.get_port.return_value = port
    listener.wait_closed = AsyncMock()
    return listener


@pytest.fixture
def ssh_io():
    """Patch the SSH primitives used by the tunnel manager and registry.

    open_ssh_connection yields to the loop before returning so concurrent
    callers really overlap.
    """
    ports = itertools.count(40001)
    connections: list[MagicMock] = []
    listeners: list[MagicMock] = []
    engines: list[MagicMock] = []

    async def connect(*args, **kwargs):
        await asyncio.sleep(0.01)
        conn = MagicMock(name=f"ssh_conn_{len(connections)}")
        connections.append(conn)
        return conn

    async def forward(conn, instance, bind_host):
        listener = make_listener(next(ports))
        listeners.append(listener)
        return listener

    def engine_factory(instance, local_port, **kwargs):
        engine = MagicMock(name=f"engine_{local_port}")
        engine.local_port = local_port
        engines.append(engine)
        return engine

    close_resources = AsyncMock()

    with (
        patch("flowdeck.tunnels.manager.load_client_key", return_value=MagicMock()) as load_key,
        patch(
            "flowdeck.tunnels.manager.open_ssh_connection", AsyncMock(side_effect=connect)
        ) as open_ssh,
        patch(
            "flowdeck.tunnels.manager.open_forward_listener", AsyncMock(side_effect=forward)
        ) as open_listener,
        patch(
            "flowdeck.tunnels.manager.create_remote_engine", MagicMock(side_effect=engine_factory)
        ) as create_engine,
        patch("flowdeck.tunnels.manager.close_tunnel_resources", close_resources),
        patch("flowdeck.tunnels.registry.close_tunnel_resources", close_resources),
    ):
        yield SimpleNamespace(
            load_key=load_key,
            open_ssh=open_ssh,
            open_listener=open_listener,
            create_engine=create_engine,
            close_resources=close_resources,
            connections=connections,
            listeners=listeners,
            engines=engines,
        )
