"""Shared fakes for speechcmd tests."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from speechcmd.audio_source import RingBuffer
from speechcmd.transport import TransportChannel


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process with real stream readers."""

    def __init__(self, exit_on_stdin_close: bool = True):
        self.pid = 4321
        self.returncode = None
        self.exit_on_stdin_close = exit_on_stdin_close

        self.stdin = MagicMock()
        self.stdin.is_closing.return_value = False
        self.stdin.close.side_effect = self._on_stdin_close
        self.stdin.drain = AsyncMock()
        self.stdin.wait_closed = AsyncMock()

        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self._exited = asyncio.Event()

        self.terminate = MagicMock()
        self.kill = MagicMock(side_effect=lambda: self.exit(-9))

    def emit(self, line: str) -> None:
        self.stdout.feed_data(line.encode("utf-8") + b"\n")

    def _on_stdin_close(self) -> None:
        self.stdin.is_closing.return_value = True
        if self.exit_on_stdin_close:
            self.exit(0)

    def exit(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeAudioSource:
    """Audio source backed by a RingBuffer the test writes into directly."""

    def __init__(self, length: int = 8192, channels: int = 2):
        self.buffer = RingBuffer(length, channels)
        self.channels = channels
        self.device_name = None
        self.started = False
        self.start_calls = 0
        self.stop_calls = 0

    def start(self, device_name, loop=True, length_seconds=10, sample_rate=48000):
        self.device_name = device_name
        self.started = True
        self.start_calls += 1

    def wait_for_first_samples(self, timeout, poll=0.1):
        return True

    @property
    def buffer_length(self):
        return self.buffer.length

    @property
    def position(self):
        return self.buffer.position

    def read(self, offset, count):
        return self.buffer.read(offset, count)

    def stop(self):
        self.started = False
        self.stop_calls += 1


class RecordingTransport(TransportChannel):
    """Transport that keeps every chunk written to it."""

    input_argument = "pipe:0"

    def __init__(self):
        self.writes = []
        self.fail_writes = False
        self.opened = False
        self.closed = False

    @property
    def is_open(self):
        return self.opened and not self.closed

    async def open(self, process):
        self.opened = True

    async def write(self, data):
        if self.fail_writes:
            raise BrokenPipeError("pipe closed")
        self.writes.append(data)

    async def close(self):
        self.closed = True


async def wait_until(predicate, timeout: float = 1.0, interval: float = 0.005) -> bool:
    """Poll predicate until it is true or timeout passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(interval)
    return True


@pytest.fixture
def fake_process_factory():
    """Build FakeProcess instances inside the running loop."""
    return FakeProcess


@pytest.fixture
def fake_audio_source():
    return FakeAudioSource()


@pytest.fixture
def recording_transport():
    return RecordingTransport()


@pytest.fixture
def eventually():
    """Async polling helper: ``assert await eventually(lambda: cond)``."""
    return wait_until
