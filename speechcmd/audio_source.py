"""Looping microphone capture into a fixed-size ring buffer."""

import logging
import threading
import time
from typing import Any, List, Optional

import numpy as np

logger = logging.getLogger(__name__)

AUDIO_DTYPE = np.float32


def list_devices() -> List[str]:
    """Return the names of all input-capable devices, in index order."""
    try:
        # Imported here so PortAudio is only loaded when a device is touched
        import sounddevice as sd

        devices = sd.query_devices()
    except Exception as e:
        logger.error(f"Could not query audio devices: {e}")
        return []
    return [d["name"] for d in devices if d.get("max_input_channels", 0) > 0]


class RingBuffer:
    """Fixed-length looping sample store.

    A single writer (the PortAudio callback) appends frames; readers take
    copies by absolute offset. The write position wraps to 0 once the
    buffer is full, the same way a looping microphone clip does.
    """

    def __init__(self, length: int, channels: int):
        if length <= 0:
            raise ValueError("Ring buffer length must be positive")
        self.length = length
        self.channels = channels
        self._data = np.zeros((length, channels), dtype=AUDIO_DTYPE)
        self._position = 0
        self._frames_written = 0
        self._lock = threading.Lock()

    @property
    def position(self) -> int:
        """Index of the next frame to be written."""
        with self._lock:
            return self._position

    @property
    def frames_written(self) -> int:
        """Total frames written since creation (never wraps)."""
        with self._lock:
            return self._frames_written

    def write(self, frames: np.ndarray) -> None:
        """Append frames, wrapping at the end of the buffer."""
        frames = np.asarray(frames, dtype=AUDIO_DTYPE).reshape(-1, self.channels)
        count = len(frames)
        if count == 0:
            return
        if count > self.length:
            # Only the newest `length` frames fit
            frames = frames[-self.length :]
            skipped = count - self.length
            count = self.length
        else:
            skipped = 0

        with self._lock:
            start = (self._position + skipped) % self.length
            end = start + count
            if end <= self.length:
                self._data[start:end] = frames
            else:
                split = self.length - start
                self._data[start:] = frames[:split]
                self._data[: end - self.length] = frames[split:]
            self._position = end % self.length
            self._frames_written += count + skipped

    def read(self, offset: int, count: int) -> np.ndarray:
        """Copy `count` frames starting at `offset`, wrapping around the end."""
        if count > self.length:
            raise ValueError("Cannot read more frames than the buffer holds")
        indices = (np.arange(count) + offset) % self.length
        with self._lock:
            return self._data[indices].copy()


class AudioSource:
    """Continuous microphone capture backed by a sounddevice InputStream."""

    def __init__(self, channels: int = 2):
        self.channels = channels
        self.device_name: Optional[str] = None
        self.sample_rate: Optional[int] = None
        self._buffer: Optional[RingBuffer] = None
        self._stream: Optional[Any] = None

    @property
    def is_running(self) -> bool:
        return self._stream is not None

    @property
    def buffer_length(self) -> int:
        if self._buffer is None:
            raise RuntimeError("Audio source not started")
        return self._buffer.length

    @property
    def position(self) -> int:
        """Current write position inside the ring buffer."""
        if self._buffer is None:
            raise RuntimeError("Audio source not started")
        return self._buffer.position

    @property
    def frames_written(self) -> int:
        if self._buffer is None:
            return 0
        return self._buffer.frames_written

    def read(self, offset: int, count: int) -> np.ndarray:
        """Read `count` frames starting at ring buffer `offset`."""
        if self._buffer is None:
            raise RuntimeError("Audio source not started")
        return self._buffer.read(offset, count)

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug(f"Input stream status: {status}")
        if self._buffer is not None:
            self._buffer.write(indata)

    def start(
        self,
        device_name: Optional[str],
        loop: bool = True,
        length_seconds: int = 10,
        sample_rate: int = 48000,
    ) -> None:
        """Open the input device and start filling the ring buffer.

        Args:
            device_name: Device name as returned by list_devices(), or None
                for the system default.
            loop: Only looping capture is supported.
            length_seconds: Ring buffer length in seconds.
            sample_rate: Capture rate in Hz.

        Raises:
            ValueError: If a non-looping capture is requested.
            sounddevice.PortAudioError: If the device cannot be opened.
        """
        if self._stream is not None:
            logger.warning("Audio source already running")
            return
        if not loop:
            raise ValueError("AudioSource only supports looping capture")

        import sounddevice as sd

        self._buffer = RingBuffer(length_seconds * sample_rate, self.channels)
        self.device_name = device_name
        self.sample_rate = sample_rate

        try:
            stream = sd.InputStream(
                samplerate=sample_rate,
                channels=self.channels,
                dtype="float32",
                device=device_name,
                callback=self._callback,
            )
        except Exception:
            self._buffer = None
            raise
        try:
            stream.start()
        except Exception:
            stream.close()
            self._buffer = None
            raise
        self._stream = stream
        logger.info(
            f"Capturing from '{device_name or 'default'}' at {sample_rate} Hz "
            f"({self.channels} ch, {length_seconds}s buffer)"
        )

    def wait_for_first_samples(self, timeout: float, poll: float = 0.1) -> bool:
        """Block until the device has delivered at least one frame."""
        deadline = time.monotonic() + timeout
        while self.frames_written == 0:
            if time.monotonic() >= deadline:
                return False
            time.sleep(poll)
        return True

    def stop(self) -> None:
        """Stop and close the input stream. Safe to call repeatedly."""
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()
            logger.info("Audio source stopped")
