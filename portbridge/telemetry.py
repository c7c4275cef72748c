import threading
import time
from dataclasses import dataclass, field
from typing import Any


@dataclass
class PairStats:
    local_address: str
    remote_address: str
    listening: bool = False
    accepted: int = 0
    active: int = 0
    completed: int = 0
    connect_failures: int = 0
    relay_errors: int = 0
    bytes_up: int = 0
    bytes_down: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "local_address": self.local_address,
            "remote_address": self.remote_address,
            "listening": self.listening,
            "accepted": self.accepted,
            "active": self.active,
            "completed": self.completed,
            "connect_failures": self.connect_failures,
            "relay_errors": self.relay_errors,
            "bytes_up": self.bytes_up,
            "bytes_down": self.bytes_down,
            "last_error": self.last_error,
        }


@dataclass
class RuntimeState:
    """Observational counters; the API reads them from worker threads."""

    started_at: float = field(default_factory=time.time)
    pairs: list[PairStats] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def register(self, local_address: str, remote_address: str) -> PairStats:
        stats = PairStats(local_address, remote_address)
        with self.lock:
            self.pairs.append(stats)
        return stats

    def set_listening(self, stats: PairStats, listening: bool, error: str | None = None) -> None:
        with self.lock:
            stats.listening = listening
            if error:
                stats.last_error = error

    def connection_opened(self, stats: PairStats) -> None:
        with self.lock:
            stats.accepted += 1
            stats.active += 1

    def connection_closed(self, stats: PairStats, up: int = 0, down: int = 0) -> None:
        with self.lock:
            stats.active -= 1
            stats.completed += 1
            stats.bytes_up += up
            stats.bytes_down += down

    def connect_failed(self, stats: PairStats, error: str) -> None:
        with self.lock:
            stats.connect_failures += 1
            stats.last_error = error

    def relay_failed(self, stats: PairStats, error: str) -> None:
        with self.lock:
            stats.relay_errors += 1
            stats.last_error = error

    def snapshot(self) -> dict[str, Any]:
        with self.lock:
            pairs = [s.to_dict() for s in self.pairs]
        return {
            "uptime_seconds": round(time.time() - self.started_at, 3),
            "pairs": pairs,
            "totals": {
                "listening": sum(1 for p in pairs if p["listening"]),
                "accepted": sum(p["accepted"] for p in pairs),
                "active": sum(p["active"] for p in pairs),
                "bytes_up": sum(p["bytes_up"] for p in pairs),
                "bytes_down": sum(p["bytes_down"] for p in pairs),
            },
        }

    def clear(self) -> None:
        with self.lock:
            for stats in self.pairs:
                stats.accepted = 0
                stats.completed = 0
                stats.connect_failures = 0
                stats.relay_errors = 0
                stats.bytes_up = 0
                stats.bytes_down = 0
                stats.last_error = None
