import contextlib
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException
import psutil
import uvicorn

from . import __version__
from .telemetry import RuntimeState


def create_app(state: RuntimeState) -> FastAPI:
    app = FastAPI(title="portbridge status", version=__version__)
    process = psutil.Process()

    @app.get("/")
    def root():
        snap = state.snapshot()
        return {
            "service": "portbridge",
            "status": "ok" if snap["totals"]["listening"] else "degraded",
            "uptime_seconds": snap["uptime_seconds"],
        }

    @app.get("/pairs")
    def pairs():
        return {"pairs": state.snapshot()["pairs"]}

    @app.get("/pairs/{port}")
    def pair(port: int):
        for row in state.snapshot()["pairs"]:
            if row["local_address"].rsplit(":", 1)[1] == str(port):
                return row
        raise HTTPException(status_code=404, detail=f"no pair for port {port}")

    @app.get("/system/metrics")
    def system_metrics():
        snap = state.snapshot()
        mem = process.memory_info()
        try:
            open_connections = len(process.net_connections(kind="tcp"))
        except psutil.AccessDenied:
            open_connections = None
        return {
            "ts": datetime.now(timezone.utc).isoformat(),
            "cpu_percent": process.cpu_percent(interval=None),
            "memory_rss_mb": round(mem.rss / (1024 * 1024), 2),
            "num_fds": process.num_fds() if hasattr(process, "num_fds") else None,
            "open_connections": open_connections,
            "totals": snap["totals"],
        }

    @app.post("/stats/reset")
    def reset_stats():
        state.clear()
        return {"ok": True}

    return app


class StatusServer(uvicorn.Server):
    """uvicorn server that leaves SIGINT/SIGTERM to the proxy's event loop."""

    def capture_signals(self):
        return contextlib.nullcontext()

    def install_signal_handlers(self) -> None:
        pass


async def serve_status(state: RuntimeState, host: str, port: int, log_level: str = "info") -> None:
    config = uvicorn.Config(create_app(state), host=host, port=port, log_level=log_level.lower())
    await StatusServer(config).serve()
