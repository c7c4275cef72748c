import asyncio
import errno
import itertools
import logging
import socket
from typing import Any

from .config import DEFAULT_BACKLOG, DEFAULT_CHUNK_SIZE, PortPair, split_host_port
from .errors import BindError
from .handler import handle_connection
from .telemetry import PairStats, RuntimeState

logger = logging.getLogger(__name__)

# Resource exhaustion or a client aborting mid-handshake; the listener
# itself is still healthy.
TRANSIENT_ACCEPT_ERRNOS = frozenset(
    {
        errno.ECONNABORTED,
        errno.EMFILE,
        errno.ENFILE,
        errno.ENOBUFS,
        errno.ENOMEM,
        errno.EPROTO,
    }
)
ACCEPT_RETRY_DELAY = 0.1


class PairListener:
    """Owns the listening socket for one port-pair.

    ``serve`` binds once, then accepts until ``close`` is called or accept
    fails with a non-transient error. Each accepted connection is handed to
    its own task and is not awaited by the loop.
    """

    def __init__(
        self,
        pair: PortPair,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        backlog: int = DEFAULT_BACKLOG,
        connect_timeout: float | None = None,
        state: RuntimeState | None = None,
    ):
        self.pair = pair
        self.chunk_size = chunk_size
        self.backlog = backlog
        self.connect_timeout = connect_timeout
        self.state = state
        self.stats: PairStats | None = None
        if state is not None:
            self.stats = state.register(pair.local_address, pair.remote_address)
        self.address: Any = None
        self.bound = asyncio.Event()
        self.handlers: set[asyncio.Task] = set()
        self._closed = False
        self._accepting: asyncio.Future | None = None

    @property
    def port(self) -> int | None:
        return self.address[1] if self.address else None

    async def bind(self) -> socket.socket:
        host, port = split_host_port(self.pair.local_address)
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(
                host, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
            )
            sock = self._bind_first(infos)
        except OSError as exc:
            if self.state and self.stats:
                self.state.set_listening(self.stats, False, str(exc))
            raise BindError(self.pair.local_address, exc) from exc
        sock.setblocking(False)
        return sock

    def _bind_first(self, infos: list) -> socket.socket:
        """Bind the first resolved address that accepts; re-raise the last error otherwise."""
        last_error: OSError | None = None
        for family, type_, proto, _, sockaddr in infos:
            sock = socket.socket(family, type_, proto)
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind(sockaddr)
                sock.listen(self.backlog)
            except OSError as exc:
                sock.close()
                last_error = exc
                continue
            return sock
        raise last_error or OSError(f"no addresses for {self.pair.local_address}")

    async def serve(self) -> None:
        sock = await self.bind()
        self.address = sock.getsockname()
        logger.info("listener bound: %s", self.pair.local_address)
        if self.state and self.stats:
            self.state.set_listening(self.stats, True)
        self.bound.set()
        try:
            await self._accept_loop(sock)
        finally:
            sock.close()
            if self.state and self.stats:
                self.state.set_listening(self.stats, False)
            logger.info("listener stopped: %s", self.pair.local_address)

    def close(self) -> None:
        """Stop accepting; connections already dispatched keep running."""
        self._closed = True
        if self._accepting is not None:
            self._accepting.cancel()

    async def _accept(self, sock: socket.socket) -> tuple[socket.socket, Any]:
        return await asyncio.get_running_loop().sock_accept(sock)

    async def _accept_loop(self, sock: socket.socket) -> None:
        conn_ids = itertools.count(1)
        while not self._closed:
            self._accepting = asyncio.ensure_future(self._accept(sock))
            try:
                conn, addr = await self._accepting
            except asyncio.CancelledError:
                if self._closed:
                    break
                raise
            except OSError as exc:
                if exc.errno in TRANSIENT_ACCEPT_ERRNOS:
                    logger.warning("Accept failed on %s, retrying: %s", self.pair.local_address, exc)
                    await asyncio.sleep(ACCEPT_RETRY_DELAY)
                    continue
                logger.error("Accept failed on %s, no longer serving: %s", self.pair.local_address, exc)
                if self.state and self.stats:
                    self.state.set_listening(self.stats, False, str(exc))
                break
            finally:
                self._accepting = None
            self._dispatch(conn, addr, next(conn_ids))

    def _dispatch(self, conn: socket.socket, addr: Any, conn_id: int) -> None:
        logger.info("Conn #%d accepted on %s from %s", conn_id, self.pair.local_address, addr)
        task = asyncio.ensure_future(self._handle(conn, conn_id))
        self.handlers.add(task)
        task.add_done_callback(self._handler_done)

    def _handler_done(self, task: asyncio.Task) -> None:
        self.handlers.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Connection handler on %s crashed: %r", self.pair.local_address, exc, exc_info=exc
            )

    async def _handle(self, conn: socket.socket, conn_id: int) -> None:
        try:
            reader, writer = await asyncio.open_connection(sock=conn)
        except OSError as exc:
            logger.warning("Conn #%d dropped before relay: %s", conn_id, exc)
            conn.close()
            return
        await handle_connection(
            reader,
            writer,
            self.pair.remote_address,
            conn_id=conn_id,
            chunk_size=self.chunk_size,
            connect_timeout=self.connect_timeout,
            state=self.state,
            stats=self.stats,
        )


async def serve(pair: PortPair, **kwargs: Any) -> None:
    await PairListener(pair, **kwargs).serve()
