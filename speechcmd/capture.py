"""Capture loop: ring buffer -> 16-bit PCM chunks -> transport."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import numpy as np

from .transport import TransportChannel

logger = logging.getLogger(__name__)

PCM16_MAX = 32767
PCM16_DTYPE = np.dtype("<i2")


def available_frames(position: int, cursor: int, length: int) -> int:
    """Frames written since cursor, accounting for ring buffer wraparound."""
    available = position - cursor
    if available < 0:
        available += length
    return available


def encode_pcm16(samples: np.ndarray) -> bytes:
    """Convert float samples in [-1, 1] to interleaved 16-bit little-endian PCM.

    Values outside the range are clamped first, so loud input saturates
    instead of wrapping around.
    """
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return np.round(clipped * PCM16_MAX).astype(PCM16_DTYPE).tobytes()


def decode_pcm16(data: bytes) -> np.ndarray:
    """Inverse of encode_pcm16, returning a flat float32 array."""
    return np.frombuffer(data, dtype=PCM16_DTYPE).astype(np.float32) / PCM16_MAX


def rms_level(samples: np.ndarray) -> float:
    """Root-mean-square loudness clamped to [0, 1]."""
    samples = np.asarray(samples, dtype=np.float32)
    if samples.size == 0:
        return 0.0
    rms = float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))
    return min(max(rms, 0.0), 1.0)


@dataclass
class CaptureSession:
    """Per-run capture bookkeeping."""

    source: object
    buffer_length: int
    chunk_size: int
    cursor: int = 0
    level: float = 0.0
    chunks_written: int = 0
    write_failures: int = 0

    def __post_init__(self):
        if not 0 < self.chunk_size < self.buffer_length:
            raise ValueError("chunk_size must be positive and smaller than the buffer")

    def advance(self) -> None:
        self.cursor = (self.cursor + self.chunk_size) % self.buffer_length

    def read_next_chunk(self) -> Optional[np.ndarray]:
        """Read exactly one chunk if one is available, advancing the cursor."""
        position = self.source.position
        if available_frames(position, self.cursor, self.buffer_length) < self.chunk_size:
            return None
        chunk = self.source.read(self.cursor, self.chunk_size)
        self.advance()
        return chunk


class CaptureLoop:
    """Cooperative loop that streams captured audio to the recognizer."""

    def __init__(
        self,
        session: CaptureSession,
        transport: TransportChannel,
        is_alive: Callable[[], bool],
        cancel_event: asyncio.Event,
        on_process_death: Optional[Callable[[], None]] = None,
        tick_interval: float = 0.01,
        max_chunks_per_tick: int = 1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the capture loop.

        Args:
            session: Capture state (source, cursor, chunk size).
            transport: Where encoded chunks are written.
            is_alive: Liveness check for the recognizer process.
            cancel_event: Set once at shutdown; checked every tick.
            on_process_death: Called once when the liveness check fails.
            tick_interval: Sleep between ticks in seconds.
            max_chunks_per_tick: Upper bound on chunks sent per tick.
            sleep: Coroutine used to wait between ticks.
        """
        self.session = session
        self.transport = transport
        self.is_alive = is_alive
        self.cancel_event = cancel_event
        self.on_process_death = on_process_death
        self.tick_interval = tick_interval
        self.max_chunks_per_tick = max_chunks_per_tick
        self._sleep = sleep
        self.process_died = False

    async def tick(self) -> bool:
        """Run one iteration.

        Returns:
            False once the loop should stop.
        """
        if self.cancel_event.is_set():
            return False

        if not self.is_alive():
            logger.error("Recognizer process is no longer running, stopping capture")
            self.process_died = True
            if self.on_process_death is not None:
                self.on_process_death()
            return False

        for _ in range(self.max_chunks_per_tick):
            chunk = self.session.read_next_chunk()
            if chunk is None:
                break

            data = encode_pcm16(chunk)
            self.session.level = rms_level(chunk)

            try:
                await self.transport.write(data)
                self.session.chunks_written += 1
            except (OSError, ConnectionError) as e:
                self.session.write_failures += 1
                logger.warning(f"Dropped audio chunk, transport write failed: {e}")
                break

        return True

    async def run(self) -> None:
        """Tick until cancelled or the recognizer dies."""
        logger.info("Capture loop started")
        try:
            while True:
                try:
                    if not await self.tick():
                        break
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.exception(f"Error in capture loop: {e}")
                await self._sleep(self.tick_interval)
        except asyncio.CancelledError:
            logger.info("Capture loop cancelled")
        finally:
            logger.info(
                f"Capture loop stopped ({self.session.chunks_written} chunks sent, "
                f"{self.session.write_failures} failed)"
            )
