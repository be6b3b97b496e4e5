"""Lock-guarded hand-off of recognized text between output readers and the dispatcher."""

import threading
from collections import deque
from typing import Deque, List, Optional

from .output_parser import TranscriptionEvent


class Mailbox:
    """Holds recognized text that has not been dispatched yet.

    The lock is held only while touching the queue, never while parsing
    or dispatching.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: Deque[TranscriptionEvent] = deque()
        self._last: Optional[TranscriptionEvent] = None

    def put(self, event: TranscriptionEvent) -> None:
        with self._lock:
            self._pending.append(event)
            self._last = event

    def take(self) -> Optional[TranscriptionEvent]:
        """Remove and return the oldest pending event, if any."""
        with self._lock:
            if not self._pending:
                return None
            return self._pending.popleft()

    def drain(self) -> List[TranscriptionEvent]:
        """Remove and return every pending event in arrival order."""
        with self._lock:
            events = list(self._pending)
            self._pending.clear()
        return events

    def clear(self) -> None:
        with self._lock:
            self._pending.clear()

    @property
    def last_heard(self) -> Optional[TranscriptionEvent]:
        """Most recent recognized text, kept after dispatch for status display."""
        with self._lock:
            return self._last

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
