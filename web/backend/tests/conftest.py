"""
Pytest configuration and fixtures for SRT sync backend tests.

Engine processes are replaced by FakeProcess objects whose stdout/stderr
are real asyncio StreamReaders fed by the test.
"""
import asyncio
import signal
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
import pytest_asyncio

from srtsync.models import ServerConfig, SyncConfig
from srtsync.services.config_store import ConfigStore
from srtsync.services.core import SyncServer


class FakeProcess:
    """Stands in for asyncio.subprocess.Process."""

    def __init__(self, pid: int, cmd: list[str]):
        self.pid = pid
        self.cmd = cmd
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode = None
        self.signals = []
        self._exited = asyncio.Event()

    def feed(self, text: str):
        """Write diagnostic text to stderr."""
        self.stderr.feed_data(text.encode())

    def feed_stdout(self, data: bytes):
        self.stdout.feed_data(data)

    def exit(self, code: int = 0):
        """Simulate the process ending on its own."""
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def send_signal(self, sig):
        self.signals.append(sig)
        self.exit(-sig)

    def terminate(self):
        self.send_signal(signal.SIGTERM)

    def kill(self):
        self.send_signal(signal.SIGKILL)


class FakeSpawner:
    """Injected spawner recording every command it is asked to run."""

    def __init__(self):
        self.processes: list[FakeProcess] = []
        self.fail = False

    async def __call__(self, cmd: list[str]) -> FakeProcess:
        if self.fail:
            raise OSError("No such file or directory: 'ffmpeg'")
        process = FakeProcess(1000 + len(self.processes), cmd)
        self.processes.append(process)
        return process

    def matching(self, needle: str) -> list[FakeProcess]:
        return [p for p in self.processes if any(needle in part for part in p.cmd)]

    def for_port(self, port: int) -> list[FakeProcess]:
        return self.matching(f"srt://0.0.0.0:{port}?")


def fake_netifaces(table: dict):
    """Stand-in for the netifaces module over a fixed interface table."""
    def ifaddresses(name):
        if name not in table:
            raise ValueError("You must specify a valid interface name.")
        return table[name]

    return SimpleNamespace(
        AF_INET=2,
        interfaces=lambda: ["lo", "eth0", "gone", "wlan0"],
        ifaddresses=ifaddresses,
    )


async def wait_until(predicate, timeout: float = 1.0, interval: float = 0.005):
    """Poll until predicate() is truthy or fail after timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)


async def settle():
    """Let reader tasks process whatever has been fed."""
    for _ in range(5):
        await asyncio.sleep(0)
    await asyncio.sleep(0.01)


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def fixed_clock():
    """Clock pinned at 00:00:00 + 10 frames (30fps) UTC."""
    now = datetime(2026, 1, 1, 0, 0, 0, 333334, tzinfo=timezone.utc)
    return lambda: now


@pytest_asyncio.fixture
async def server(spawner, tmp_path):
    """Four-channel server with fast timers and fake engine processes."""
    srt = SyncServer(
        server=ServerConfig(channel_count=4),
        sync=SyncConfig(),
        spawner=spawner,
        store=ConfigStore(str(tmp_path / "configs")),
        recordings_dir=str(tmp_path / "recordings"),
    )
    srt.channels.restart_delay = 0.05
    srt.channels.cycle_delay = 0.05
    srt.channels.resume_delay = 0.05
    srt.channels.kill_grace = 0.1
    srt.sync.restart_delay = 0.05
    srt.sync.kill_grace = 0.1
    srt.recordings.kill_grace = 0.1

    yield srt

    await srt.shutdown()


@pytest.fixture
def events(server):
    """Every event emitted by the server, as (kind, payload) tuples."""
    received = []
    server.bus.subscribe_all(lambda kind, payload: received.append((kind, payload)))
    return received


def channel(server, number: int):
    return server.registry.get_by_number(number)
