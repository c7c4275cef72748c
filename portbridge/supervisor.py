import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from .config import DEFAULT_BACKLOG, DEFAULT_CHUNK_SIZE, PortPair
from .listener import PairListener
from .telemetry import RuntimeState

logger = logging.getLogger(__name__)


class ProxySupervisor:
    """Runs one PairListener per port-pair and waits for every one of them.

    A listener that fails (bind error) is logged straight away but does not
    cancel its siblings; the first failure is raised once all have ended.
    """

    def __init__(
        self,
        pairs: Sequence[PortPair],
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        backlog: int = DEFAULT_BACKLOG,
        connect_timeout: float | None = None,
        state: RuntimeState | None = None,
    ):
        if not pairs:
            raise ValueError("at least one port pair is required")
        self.state = state if state is not None else RuntimeState()
        self.listeners = [
            PairListener(
                pair,
                chunk_size=chunk_size,
                backlog=backlog,
                connect_timeout=connect_timeout,
                state=self.state,
            )
            for pair in pairs
        ]

    async def run(self) -> None:
        tasks = []
        for listener in self.listeners:
            logger.info("tcp_pair %s", listener.pair)
            tasks.append(asyncio.ensure_future(listener.serve()))

        first_error: BaseException | None = None
        try:
            for finished in asyncio.as_completed(tasks):
                try:
                    await finished
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.error("Failed to run_pair; error=%s", exc)
                    if first_error is None:
                        first_error = exc
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        if first_error is not None:
            raise first_error

    def close(self) -> None:
        for listener in self.listeners:
            listener.close()

    async def wait_bound(self, timeout: float | None = None) -> None:
        """Wait until every listener has bound its socket."""
        await asyncio.wait_for(
            asyncio.gather(*(listener.bound.wait() for listener in self.listeners)),
            timeout=timeout,
        )


async def run(pairs: Sequence[PortPair], **kwargs: Any) -> None:
    await ProxySupervisor(pairs, **kwargs).run()
