import argparse
import asyncio
import logging
import sys

from pydantic import ValidationError

from . import __version__
from .config import DEFAULT_BACKLOG, DEFAULT_CHUNK_SIZE, DEFAULT_LOCAL_HOST, LOG_LEVELS, ProxyConfig
from .errors import FatalError
from .supervisor import ProxySupervisor

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="portbridge",
        description="Forward every given port on the local host to the same port on a remote host.",
    )
    parser.add_argument("-l", "--local-host", default=DEFAULT_LOCAL_HOST)
    parser.add_argument(
        "-p",
        "--ports",
        action="extend",
        nargs="+",
        type=int,
        required=True,
        help="Port to forward; repeat the flag or list several",
    )
    parser.add_argument("-r", "--remote-host", required=True)
    parser.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE)
    parser.add_argument("--backlog", type=int, default=DEFAULT_BACKLOG)
    parser.add_argument(
        "--connect-timeout",
        type=float,
        default=None,
        help="Seconds to wait for the remote connect (default: platform default)",
    )
    parser.add_argument("--status-host", default="127.0.0.1")
    parser.add_argument(
        "--status-port",
        type=int,
        default=None,
        help="Serve the HTTP status API on this port (default: off)",
    )
    parser.add_argument("--log-level", default="INFO", type=str.upper, choices=LOG_LEVELS)
    parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def parse_config(argv: list[str] | None = None) -> ProxyConfig:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return ProxyConfig(
            local_host=args.local_host,
            remote_host=args.remote_host,
            ports=args.ports,
            chunk_size=args.chunk_size,
            backlog=args.backlog,
            connect_timeout=args.connect_timeout,
            status_host=args.status_host,
            status_port=args.status_port,
            log_level=args.log_level,
        )
    except ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        parser.error(errors)


def _status_stopped(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("status API failed; forwarding continues: %s", exc)
    else:
        logger.warning("status API stopped; forwarding continues")


async def serve(config: ProxyConfig) -> None:
    supervisor = ProxySupervisor(
        config.pairs(),
        chunk_size=config.chunk_size,
        backlog=config.backlog,
        connect_timeout=config.connect_timeout,
    )
    if config.status_port is None:
        await supervisor.run()
        return

    from .api import serve_status

    status = asyncio.ensure_future(
        serve_status(supervisor.state, config.status_host, config.status_port, config.log_level)
    )
    status.add_done_callback(_status_stopped)
    logger.info("status API on %s:%s", config.status_host, config.status_port)
    try:
        await supervisor.run()
    finally:
        status.cancel()
        await asyncio.gather(status, return_exceptions=True)


def main(argv: list[str] | None = None) -> int:
    config = parse_config(argv)
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    try:
        asyncio.run(serve(config))
    except FatalError as exc:
        logger.error("%s", exc)
        return EXIT_FATAL
    except KeyboardInterrupt:
        logger.info("interrupted, shutting down")
        return EXIT_INTERRUPTED
    return EXIT_OK


def run() -> None:
    sys.exit(main())
