"""Byte conduits carrying encoded audio into the ffmpeg process."""

import asyncio
import errno
import logging
import os
import stat
from pathlib import Path
from typing import Optional

from .config import TransportConfig

logger = logging.getLogger(__name__)


class TransportClosedError(ConnectionError):
    """Raised when writing to a transport that is not open."""


class TransportChannel:
    """One-directional byte pipe from this process to the recognizer."""

    #: Value passed to ffmpeg's ``-i`` option.
    input_argument: str = "pipe:0"

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    def prepare(self) -> None:
        """Create any filesystem objects needed before the process launches."""

    async def open(self, process: asyncio.subprocess.Process) -> None:
        raise NotImplementedError

    async def write(self, data: bytes) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class StdinTransport(TransportChannel):
    """Writes audio straight into the process's standard input."""

    input_argument = "pipe:0"

    def __init__(self):
        self._writer: Optional[asyncio.StreamWriter] = None

    @property
    def is_open(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def open(self, process: asyncio.subprocess.Process) -> None:
        if process.stdin is None:
            raise TransportClosedError("Process was started without a stdin pipe")
        self._writer = process.stdin
        logger.debug("Stdin transport attached")

    async def write(self, data: bytes) -> None:
        if not self.is_open:
            raise TransportClosedError("Stdin transport is closed")
        self._writer.write(data)
        await self._writer.drain()

    async def close(self) -> None:
        writer, self._writer = self._writer, None
        if writer is None or writer.is_closing():
            return
        writer.close()
        try:
            await writer.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            # Reader already gone
            pass


class NamedPipeTransport(TransportChannel):
    """Writes audio into a POSIX FIFO that ffmpeg reads as its input file."""

    def __init__(self, path: Path, open_timeout: float = 5.0, poll_interval: float = 0.05):
        self.path = Path(path)
        self.open_timeout = open_timeout
        self.poll_interval = poll_interval
        self._fd: Optional[int] = None

    @property
    def input_argument(self) -> str:
        return str(self.path)

    @property
    def is_open(self) -> bool:
        return self._fd is not None

    def prepare(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.exists():
            if not stat.S_ISFIFO(self.path.stat().st_mode):
                raise FileExistsError(f"{self.path} exists and is not a FIFO")
            self.path.unlink()
        os.mkfifo(self.path, 0o600)
        logger.debug(f"Created FIFO {self.path}")

    async def open(self, process: asyncio.subprocess.Process) -> None:
        """Open the write side once the reader has opened the FIFO.

        A non-blocking open fails with ENXIO until a reader exists, so this
        polls instead of parking a thread in a blocking open().
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.open_timeout
        while True:
            try:
                fd = os.open(self.path, os.O_WRONLY | os.O_NONBLOCK)
                break
            except OSError as e:
                if e.errno != errno.ENXIO:
                    raise
            if process.returncode is not None:
                raise TransportClosedError("Process exited before opening the FIFO")
            if loop.time() >= deadline:
                raise TimeoutError(
                    f"No reader opened {self.path} within {self.open_timeout}s"
                )
            await asyncio.sleep(self.poll_interval)

        os.set_blocking(fd, True)
        self._fd = fd
        logger.info(f"Connected to FIFO {self.path}")

    def _write_all(self, fd: int, data: bytes) -> None:
        view = memoryview(data)
        while view:
            written = os.write(fd, view)
            view = view[written:]

    async def write(self, data: bytes) -> None:
        fd = self._fd
        if fd is None:
            raise TransportClosedError("FIFO transport is closed")
        await asyncio.to_thread(self._write_all, fd, data)

    async def close(self) -> None:
        fd, self._fd = self._fd, None
        try:
            if fd is not None:
                os.close(fd)
        finally:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass


def create_transport(config: TransportConfig) -> TransportChannel:
    """Build the transport selected in configuration."""
    if config.kind == "fifo":
        return NamedPipeTransport(config.computed_fifo_path, config.open_timeout_s)
    return StdinTransport()
