import errno
import os
import signal
import socket
import subprocess
import sys
import time
from pathlib import Path

import pytest

from portbridge import cli
from portbridge.config import PortPair
from portbridge.listener import PairListener

from .conftest import free_port

ROOT = Path(__file__).resolve().parents[1]


def test_parse_config_builds_pairs():
    config = cli.parse_config(["-r", "10.1.1.1", "-p", "80", "443", "-p", "8080", "-l", "127.0.0.1"])
    assert config.ports == [80, 443, 8080]
    assert config.pairs()[1] == PortPair(local_address="127.0.0.1:443", remote_address="10.1.1.1:443")
    assert config.connect_timeout is None
    assert config.status_port is None


def test_options_flow_into_config():
    config = cli.parse_config(
        ["-r", "h", "-p", "1", "--chunk-size", "1024", "--connect-timeout", "2.5", "--log-level", "debug"]
    )
    assert config.chunk_size == 1024
    assert config.connect_timeout == 2.5
    assert config.log_level == "DEBUG"


@pytest.mark.parametrize(
    "argv",
    [
        ["-p", "80"],
        ["-r", "h"],
        ["-r", "h", "-p", "http"],
        ["-r", "h", "-p", "0"],
        ["-r", "h", "-p", "80", "80"],
        ["-r", "h", "-p", "80", "--chunk-size", "0"],
    ],
)
def test_invalid_arguments_exit_with_usage_error(argv):
    with pytest.raises(SystemExit) as info:
        cli.parse_config(argv)
    assert info.value.code == cli.EXIT_USAGE


def test_bind_failure_exits_nonzero():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as taken:
        taken.bind(("127.0.0.1", 0))
        taken.listen()
        port = taken.getsockname()[1]
        assert cli.main(["-l", "127.0.0.1", "-r", "127.0.0.1", "-p", str(port)]) == cli.EXIT_FATAL


def test_exit_ok_once_every_listener_has_stopped(monkeypatch):
    async def broken_accept(self, sock):
        raise OSError(errno.EBADF, "Bad file descriptor")

    monkeypatch.setattr(PairListener, "_accept", broken_accept)
    first = free_port()
    second = free_port()
    while second == first:
        second = free_port()
    argv = ["-l", "127.0.0.1", "-r", "127.0.0.1", "-p", str(first), str(second)]
    assert cli.main(argv) == cli.EXIT_OK


def port_in_use(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind(("127.0.0.1", port))
        except OSError:
            return True
    return False


def wait_for_listener(proc: subprocess.Popen, port: int, timeout: float = 15.0) -> None:
    deadline = time.monotonic() + timeout
    while not port_in_use(port):
        if proc.poll() is not None:
            raise AssertionError(f"portbridge exited early with {proc.returncode}")
        if time.monotonic() > deadline:
            raise AssertionError(f"nothing listening on {port}")
        time.sleep(0.05)


@pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX SIGINT delivery")
@pytest.mark.parametrize("with_status_api", [False, True])
def test_ctrl_c_exits_with_130(with_status_api):
    port = free_port()
    argv = [sys.executable, "-m", "portbridge", "-l", "127.0.0.1", "-r", "127.0.0.1", "-p", str(port)]
    status_port = None
    if with_status_api:
        status_port = free_port()
        argv += ["--status-port", str(status_port)]
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(p for p in (str(ROOT), env.get("PYTHONPATH")) if p)

    proc = subprocess.Popen(
        argv, cwd=ROOT, env=env, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL
    )
    try:
        wait_for_listener(proc, port)
        if status_port is not None:
            wait_for_listener(proc, status_port)
        proc.send_signal(signal.SIGINT)
        assert proc.wait(timeout=10) == cli.EXIT_INTERRUPTED
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()
