import asyncio
import logging

from .config import DEFAULT_CHUNK_SIZE, split_host_port
from .relay import relay
from .telemetry import PairStats, RuntimeState

logger = logging.getLogger(__name__)


async def open_remote(
    remote_address: str,
    connect_timeout: float | None = None,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    host, port = split_host_port(remote_address)
    connect = asyncio.open_connection(host, port)
    if connect_timeout is None:
        return await connect
    return await asyncio.wait_for(connect, timeout=connect_timeout)


async def close_writer(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass


async def handle_connection(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    remote_address: str,
    conn_id: int = 0,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    connect_timeout: float | None = None,
    state: RuntimeState | None = None,
    stats: PairStats | None = None,
) -> None:
    """Serve one inbound connection; failures stay confined to it."""
    peer = writer.get_extra_info("peername")
    up = down = 0
    if state and stats:
        state.connection_opened(stats)
    try:
        try:
            remote_reader, remote_writer = await open_remote(remote_address, connect_timeout)
        except (OSError, asyncio.TimeoutError) as exc:
            error = str(exc) or type(exc).__name__
            logger.warning("Conn #%d failed to connect to %s: %s", conn_id, remote_address, error)
            if state and stats:
                state.connect_failed(stats, error)
            return

        logger.info("Conn #%d established %s -> %s", conn_id, peer, remote_address)
        try:
            up, down = await relay(
                (reader, remote_writer),
                (remote_reader, writer),
                chunk_size,
            )
        except OSError as exc:
            logger.warning("Conn #%d failed to transfer; error=%s", conn_id, exc)
            if state and stats:
                state.relay_failed(stats, str(exc))
        else:
            logger.info("Conn #%d closed (sent=%d bytes, received=%d bytes)", conn_id, up, down)
        finally:
            await close_writer(remote_writer)
    finally:
        await close_writer(writer)
        if state and stats:
            state.connection_closed(stats, up, down)
