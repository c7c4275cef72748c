"""Bidirectional byte relay between two asyncio stream pairs.

Each direction copies until its reader hits EOF and then half-closes the
opposite writer, so a client that shuts down its send side still receives
the remote's reply.
"""

import asyncio

from .config import DEFAULT_CHUNK_SIZE

StreamPair = tuple[asyncio.StreamReader, asyncio.StreamWriter]


async def pipe(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> int:
    """Copy ``reader`` into ``writer`` until EOF, then half-close ``writer``.

    Returns the number of bytes copied.
    """
    total = 0
    while True:
        data = await reader.read(chunk_size)
        if not data:
            break
        writer.write(data)
        await writer.drain()
        total += len(data)
    if writer.can_write_eof():
        writer.write_eof()
    else:
        writer.close()
    return total


async def relay(
    a_to_b: StreamPair,
    b_to_a: StreamPair,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> tuple[int, int]:
    """Run both directions concurrently.

    Returns ``(a_to_b_bytes, b_to_a_bytes)`` once both directions have seen
    EOF. The first failure cancels the other direction, closes both writers
    and is re-raised.
    """
    forward = asyncio.ensure_future(pipe(a_to_b[0], a_to_b[1], chunk_size))
    backward = asyncio.ensure_future(pipe(b_to_a[0], b_to_a[1], chunk_size))
    tasks = (forward, backward)
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    failed = [t for t in (forward, backward) if t in done and t.exception() is not None]
    if failed:
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        a_to_b[1].close()
        b_to_a[1].close()
        raise failed[0].exception()

    return forward.result(), backward.result()
