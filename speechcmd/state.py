"""State management for the speech pipeline."""

import logging
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class PipelineStateEnum(str, Enum):
    """Possible states for the speech pipeline."""

    IDLE = "Idle"
    STARTING = "Starting"
    STREAMING = "Streaming"
    STOPPING = "Stopping"
    FAILED = "Failed"


# Allowed transitions. FAILED is reachable from any state.
_TRANSITIONS = {
    PipelineStateEnum.IDLE: {PipelineStateEnum.STARTING},
    PipelineStateEnum.STARTING: {
        PipelineStateEnum.STREAMING,
        PipelineStateEnum.STOPPING,
    },
    PipelineStateEnum.STREAMING: {PipelineStateEnum.STOPPING},
    PipelineStateEnum.STOPPING: {PipelineStateEnum.IDLE},
    PipelineStateEnum.FAILED: {PipelineStateEnum.STOPPING},
}


class InvalidTransitionError(RuntimeError):
    """Raised when a state change is not allowed by the pipeline state machine."""


class PipelineStateManager:
    """Holds the single authoritative state of a pipeline."""

    def __init__(self):
        """Initialize state manager with IDLE state."""
        self._state: PipelineStateEnum = PipelineStateEnum.IDLE
        self._last_error: Optional[str] = None
        self._observers: List[Callable[[PipelineStateEnum, Optional[str]], Any]] = []

    @property
    def current_state(self) -> PipelineStateEnum:
        """Get the current state of the pipeline."""
        return self._state

    @property
    def last_error(self) -> Optional[str]:
        """Get the last error message, if any."""
        return self._last_error

    @property
    def is_streaming(self) -> bool:
        return self._state == PipelineStateEnum.STREAMING

    def add_observer(
        self, observer: Callable[[PipelineStateEnum, Optional[str]], Any]
    ) -> None:
        """Add an observer callback for state changes.

        The callback receives the new state and optional error message.
        """
        self._observers.append(observer)

    def remove_observer(
        self, observer: Callable[[PipelineStateEnum, Optional[str]], Any]
    ) -> None:
        """Remove a previously added observer. Unknown observers are ignored."""
        try:
            self._observers.remove(observer)
        except ValueError:
            pass

    def _notify_observers(self) -> None:
        for observer in list(self._observers):
            try:
                observer(self._state, self._last_error)
            except Exception:
                logger.exception("State observer raised")

    def can_transition(self, new_state: PipelineStateEnum) -> bool:
        """Check whether moving to new_state is allowed from the current state."""
        if new_state == PipelineStateEnum.FAILED:
            return True
        return new_state in _TRANSITIONS[self._state]

    def set_state(self, new_state: PipelineStateEnum) -> None:
        """Set the pipeline's state.

        Args:
            new_state: The new state to set.

        Raises:
            TypeError: If the provided state is not a valid PipelineStateEnum.
            InvalidTransitionError: If the transition is not allowed.
        """
        if not isinstance(new_state, PipelineStateEnum):
            raise TypeError(f"State must be a PipelineStateEnum, got {type(new_state)}")

        if new_state == self._state:
            return

        if not self.can_transition(new_state):
            raise InvalidTransitionError(
                f"Cannot move from {self._state.value} to {new_state.value}"
            )

        # Reset error when moving out of failed state
        if new_state != PipelineStateEnum.FAILED:
            self._last_error = None

        logger.debug(f"Pipeline state {self._state.value} -> {new_state.value}")
        self._state = new_state
        self._notify_observers()

    def set_error(self, message: str) -> None:
        """Move to FAILED with the provided reason.

        Args:
            message: The error message to store.
        """
        changed = (
            self._state != PipelineStateEnum.FAILED or self._last_error != message
        )
        self._last_error = message
        self._state = PipelineStateEnum.FAILED

        if changed:
            self._notify_observers()

    def get_status(self) -> Tuple[str, Optional[str]]:
        """Get the current status and last error message.

        Returns:
            A tuple containing the current state value (as a string) and the last error
            message (if any).
        """
        return self.current_state.value, self.last_error
