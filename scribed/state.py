"""State management for the scribed daemon."""

import logging
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class DaemonStateEnum(str, Enum):
    """Possible states for the daemon."""

    IDLE = "idle"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"
    ERROR = "error"


class DaemonStateManager:
    """Manages the user-visible state of the daemon."""

    def __init__(self):
        """Initialize state manager with IDLE state."""
        self._state: DaemonStateEnum = DaemonStateEnum.IDLE
        self._last_error: Optional[str] = None
        self._observers: List[Callable[[DaemonStateEnum, Optional[str]], Any]] = []

    @property
    def current_state(self) -> DaemonStateEnum:
        """Get the current state of the daemon."""
        return self._state

    @property
    def last_error(self) -> Optional[str]:
        """Get the last error message, if any."""
        return self._last_error

    def add_observer(
        self, observer: Callable[[DaemonStateEnum, Optional[str]], Any]
    ) -> None:
        """Add an observer callback for state changes.

        The callback receives the new state and optional error message.
        """
        self._observers.append(observer)

    def _notify_observers(self) -> None:
        for observer in self._observers:
            try:
                observer(self._state, self._last_error)
            except Exception:
                logger.exception("State observer failed")

    def set_state(self, new_state: DaemonStateEnum) -> None:
        """Set the daemon's operational state.

        Raises:
            TypeError: If the provided state is not a valid DaemonStateEnum.
        """
        if not isinstance(new_state, DaemonStateEnum):
            raise TypeError(f"State must be a DaemonStateEnum, got {type(new_state)}")

        if new_state != DaemonStateEnum.ERROR:
            self._last_error = None

        if self._state != new_state:
            self._state = new_state
            self._notify_observers()

    def set_error(self, message: str) -> None:
        """Set an error state with a human-readable message."""
        changed = self._state != DaemonStateEnum.ERROR or self._last_error != message
        self._last_error = message
        self._state = DaemonStateEnum.ERROR

        if changed:
            self._notify_observers()

    def clear_error(self) -> bool:
        """Acknowledge a surfaced error after a later action succeeded.

        Only the ERROR state is left; a busy state keeps running.

        Returns:
            True if an error was cleared.
        """
        if self._state != DaemonStateEnum.ERROR:
            return False
        logger.info(f"Clearing error: {self._last_error}")
        self.set_state(DaemonStateEnum.IDLE)
        return True

    def get_status(self) -> Tuple[str, Optional[str]]:
        """Get the current state value and the last error message."""
        return self.current_state.value, self.last_error
