"""Extracts recognized text from the whisper filter's JSON-ish output lines."""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

logger = logging.getLogger(__name__)

# Tolerates single or double quotes around key and value; the filter's
# output is not always strict JSON.
TEXT_FIELD_PATTERN = re.compile(
    r"""(?P<kq>["'])text(?P=kq)\s*:\s*(?P<vq>["'])(?P<value>(?:\\.|(?!(?P=vq)).)*)(?P=vq)""",
    re.DOTALL,
)

# Words only, so "(static)", "[BLANK_AUDIO]" and "*breathing*" lose their
# decoration before the denylist check.
WORD_PATTERN = re.compile(r"[a-z_']+")

DEFAULT_DENYLIST = frozenset(
    {"static", "noise", "breathing", "silence", "clicking", "crackling"}
)


@dataclass(frozen=True)
class TranscriptionEvent:
    """Recognized text and the time it was seen."""

    text: str
    observed_at: float = field(default_factory=time.time)


def _unescape(value: str) -> str:
    return re.sub(r"\\(.)", r"\1", value)


def is_noise(text: str, denylist: Iterable[str] = DEFAULT_DENYLIST) -> bool:
    """True if text has words and every one is a non-speech descriptor.

    Digits and punctuation are not words, so "1" or "2." are never noise.
    """
    words = WORD_PATTERN.findall(text.lower())
    deny = set(denylist)
    return bool(words) and all(word.strip("'") in deny for word in words)


def parse_line(
    raw_line: str, denylist: Iterable[str] = DEFAULT_DENYLIST
) -> Optional[str]:
    """Return the text field of a recognizer output line, or None.

    Lines that are not bracketed by ``{`` and ``}`` are status chatter and
    yield None, as do empty values and noise descriptors.
    """
    line = raw_line.strip()
    if not (line.startswith("{") and line.endswith("}")):
        return None

    match = TEXT_FIELD_PATTERN.search(line)
    if not match:
        return None

    text = _unescape(match.group("value")).strip()
    if not text:
        return None
    if is_noise(text, denylist):
        logger.debug(f"Dropped non-speech transcription: {text!r}")
        return None
    return text


class OutputParser:
    """Turns raw recognizer lines into TranscriptionEvents."""

    def __init__(
        self,
        denylist: Iterable[str] = DEFAULT_DENYLIST,
        clock: Callable[[], float] = time.time,
    ):
        self.denylist = frozenset(word.lower() for word in denylist)
        self._clock = clock

    def feed(self, raw_line: str) -> Optional[TranscriptionEvent]:
        text = parse_line(raw_line, self.denylist)
        if text is None:
            return None
        return TranscriptionEvent(text=text, observed_at=self._clock())
