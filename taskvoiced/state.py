"""State management for the taskvoiced daemon."""

import logging
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

StateObserver = Callable[["DaemonStateEnum", Optional[str]], Any]


class DaemonStateEnum(str, Enum):
    """Possible states for the daemon.

    There is no error state: a failed utterance reports its error and the
    daemon goes back to IDLE, ready for the next recording.
    """

    IDLE = "Idle"
    RECORDING = "Recording"
    PROCESSING = "Processing"


class DaemonStateManager:
    """Tracks the recording lifecycle and the last reported failure."""

    def __init__(self):
        self._state: DaemonStateEnum = DaemonStateEnum.IDLE
        self._last_error: Optional[str] = None
        self._observers: List[StateObserver] = []

    @property
    def current_state(self) -> DaemonStateEnum:
        return self._state

    @property
    def last_error(self) -> Optional[str]:
        """Most recent failure; kept until the next recording starts."""
        return self._last_error

    def add_observer(self, observer: StateObserver) -> None:
        """Register a callback receiving (state, last_error) on every change."""
        self._observers.append(observer)

    def _notify_observers(self) -> None:
        for observer in self._observers:
            try:
                observer(self._state, self._last_error)
            except Exception:
                # One broken observer must not stop the others
                logger.exception("State observer failed")

    def set_state(self, new_state: DaemonStateEnum) -> None:
        """Move to a new state.

        Raises:
            TypeError: If the provided state is not a valid DaemonStateEnum.
        """
        if not isinstance(new_state, DaemonStateEnum):
            raise TypeError(f"State must be a DaemonStateEnum, got {type(new_state)}")

        changed = self._state != new_state
        if new_state == DaemonStateEnum.RECORDING and self._last_error is not None:
            self._last_error = None
            changed = True

        self._state = new_state
        if changed:
            logger.debug(f"State -> {new_state.value}")
            self._notify_observers()

    def report_error(self, message: str) -> None:
        """Record a failure without leaving the current state."""
        if message == self._last_error:
            return
        self._last_error = message
        self._notify_observers()

    def get_status(self) -> Tuple[str, Optional[str]]:
        """Return (state value, last error)."""
        return self._state.value, self._last_error
