"""Keyboard input used when speech recognition is unavailable."""

import asyncio
import logging
import sys
from typing import Optional

from .commands import CommandMapper

logger = logging.getLogger(__name__)


class StdinCommandSource:
    """Reads typed answers from standard input and raises the same command events."""

    def __init__(self, mapper: CommandMapper, reader: Optional[asyncio.StreamReader] = None):
        """Initialize the fallback source.

        Args:
            mapper: Command mapper whose subscribers receive the events.
            reader: Optional pre-built reader; stdin is connected on start otherwise.
        """
        self.mapper = mapper
        self._reader = reader
        self._task: Optional[asyncio.Task] = None
        self._start_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _connect_stdin(self) -> asyncio.StreamReader:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)
        await loop.connect_read_pipe(lambda: protocol, sys.stdin)
        return reader

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        logger.info("Keyboard input active: type 1 or 2 and press Enter")
        try:
            while True:
                data = await reader.readline()
                if not data:
                    logger.info("Standard input closed")
                    break
                text = data.decode("utf-8", errors="replace").strip()
                if text:
                    self.mapper.handle(text)
        except asyncio.CancelledError:
            logger.debug("Keyboard input cancelled")

    async def start(self) -> None:
        async with self._start_lock:
            if self.is_running:
                logger.debug("Keyboard input already running")
                return
            if self._reader is None:
                self._reader = await self._connect_stdin()
            self._task = asyncio.create_task(self._read_loop(self._reader))

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
