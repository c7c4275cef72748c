import asyncio
import socket

import pytest
import pytest_asyncio

from portbridge.config import PortPair
from portbridge.listener import PairListener
from portbridge.telemetry import RuntimeState


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def echo_handler(reader, writer):
    try:
        while True:
            data = await reader.read(65536)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    finally:
        writer.close()


async def reply_after_eof_handler(reader, writer):
    """Read until the client half-closes, then answer and close."""
    data = await reader.read()
    writer.write(b"got:" + data)
    await writer.drain()
    writer.close()


async def start_server(handler, port: int = 0):
    server = await asyncio.start_server(handler, "127.0.0.1", port)
    return server, server.sockets[0].getsockname()[1]


@pytest_asyncio.fixture
async def echo_server():
    server, port = await start_server(echo_handler)
    yield port
    server.close()
    await server.wait_closed()


@pytest_asyncio.fixture
async def reply_server():
    server, port = await start_server(reply_after_eof_handler)
    yield port
    server.close()
    await server.wait_closed()


@pytest.fixture
def state():
    return RuntimeState()


@pytest_asyncio.fixture
async def running_listener(state):
    """Factory that starts a PairListener on an ephemeral local port."""
    started = []

    async def start(remote_port: int, **kwargs):
        pair = PortPair(local_address="127.0.0.1:0", remote_address=f"127.0.0.1:{remote_port}")
        listener = PairListener(pair, state=state, **kwargs)
        task = asyncio.ensure_future(listener.serve())
        await asyncio.wait_for(listener.bound.wait(), timeout=5)
        started.append((listener, task))
        return listener, task

    yield start

    for listener, task in started:
        listener.close()
        await asyncio.wait_for(asyncio.gather(task, return_exceptions=True), timeout=5)
        for handler in list(listener.handlers):
            handler.cancel()
        await asyncio.gather(*listener.handlers, return_exceptions=True)
