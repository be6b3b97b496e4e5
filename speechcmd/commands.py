"""Maps transcriptions to commands and notifies subscribers."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

from .config import VocabularyConfig

logger = logging.getLogger(__name__)

TRAILING_PUNCTUATION = ".,!?;:\"'"


class CommandResult(int, Enum):
    """Outcome of mapping one utterance."""

    UNRECOGNIZED = 0
    AFFIRMATIVE = 1
    NEGATIVE = 2


@dataclass(frozen=True)
class CommandRecognized:
    """Fired when an utterance maps to a command."""

    value: CommandResult


@dataclass(frozen=True)
class UnrecognizedUtterance:
    """Fired once per utterance that matched neither vocabulary."""

    text: str = ""


def normalize(text: str) -> str:
    return text.lower().strip().rstrip(TRAILING_PUNCTUATION).strip()


def map_text(text: str, vocabulary: VocabularyConfig) -> CommandResult:
    """Map free text to a command.

    Exact matches are tried before substring matches, and affirmative
    before negative at each step.
    """
    normalized = normalize(text)
    if not normalized:
        return CommandResult.UNRECOGNIZED

    if normalized in vocabulary.affirmative_exact:
        return CommandResult.AFFIRMATIVE
    if normalized in vocabulary.negative_exact:
        return CommandResult.NEGATIVE

    if any(marker in normalized for marker in vocabulary.affirmative_contains):
        return CommandResult.AFFIRMATIVE
    if any(marker in normalized for marker in vocabulary.negative_contains):
        return CommandResult.NEGATIVE

    return CommandResult.UNRECOGNIZED


CommandObserver = Callable[[CommandRecognized], Any]
UnrecognizedObserver = Callable[[UnrecognizedUtterance], Any]


class Subscription:
    """Handle returned by CommandMapper.subscribe()."""

    def __init__(
        self,
        mapper: "CommandMapper",
        on_command: Optional[CommandObserver],
        on_unrecognized: Optional[UnrecognizedObserver],
    ):
        self._mapper = mapper
        self.on_command = on_command
        self.on_unrecognized = on_unrecognized

    @property
    def active(self) -> bool:
        return self in self._mapper._subscriptions

    def cancel(self) -> None:
        self._mapper.unsubscribe(self)


class CommandMapper:
    """Observer registry plus the vocabulary used to classify utterances."""

    def __init__(self, vocabulary: Optional[VocabularyConfig] = None):
        self.vocabulary = vocabulary or VocabularyConfig()
        self._subscriptions: List[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        on_command: Optional[CommandObserver] = None,
        on_unrecognized: Optional[UnrecognizedObserver] = None,
    ) -> Subscription:
        """Register callbacks for recognized and unrecognized utterances."""
        subscription = Subscription(self, on_command, on_unrecognized)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass

    def clear(self) -> None:
        """Drop every subscription."""
        if self._subscriptions:
            logger.debug(f"Removing {len(self._subscriptions)} command subscriptions")
        self._subscriptions.clear()

    def map_text(self, text: str) -> CommandResult:
        return map_text(text, self.vocabulary)

    def handle(self, text: str) -> CommandResult:
        """Map text and notify subscribers exactly once."""
        result = self.map_text(text)
        self.dispatch(result, text)
        return result

    def dispatch(self, result: CommandResult, text: str = "") -> None:
        if result == CommandResult.UNRECOGNIZED:
            logger.info(f"Unrecognized utterance, asking to repeat: {text!r}")
            event = UnrecognizedUtterance(text=text)
            for subscription in list(self._subscriptions):
                self._notify(subscription.on_unrecognized, event)
        else:
            logger.info(f"Recognized command {result.name} from {text!r}")
            event = CommandRecognized(value=result)
            for subscription in list(self._subscriptions):
                self._notify(subscription.on_command, event)

    @staticmethod
    def _notify(callback: Optional[Callable[[Any], Any]], event: Any) -> None:
        if callback is None:
            return
        try:
            callback(event)
        except Exception:
            logger.exception("Command subscriber raised")
