"""Tracks whether the speech model is ready, from service notifications."""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, List, Literal, Optional, Union

from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_REASON = "Model download failed, check the network and retry."


class ModelDownloadProgress(BaseModel):
    """Notification of model download progress."""

    downloaded_bytes: int
    total_bytes: Optional[int] = None


class ModelStatusEvent(BaseModel):
    """Notification of a model status change."""

    status: Literal["exists", "downloading", "finished", "failed"]
    model_path: Optional[str] = None
    message: Optional[str] = None


ModelNotification = Union[ModelDownloadProgress, ModelStatusEvent]


class ReadinessState(str, Enum):
    """Readiness of the speech model."""

    UNKNOWN = "unknown"
    DOWNLOADING = "downloading"
    READY = "ready"
    FAILED = "failed"


class ModelReadinessTracker:
    """Reflects model notifications into a readiness gate.

    Only notification events change the state; everything else reads it.
    """

    def __init__(self):
        self._state = ReadinessState.UNKNOWN
        self._progress: Optional[ModelDownloadProgress] = None
        self._reason: Optional[str] = None
        self._observers: List[Callable[[ReadinessState], Any]] = []

    @property
    def state(self) -> ReadinessState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == ReadinessState.READY

    @property
    def progress(self) -> Optional[ModelDownloadProgress]:
        return self._progress

    @property
    def reason(self) -> Optional[str]:
        """Failure reason while in the FAILED state."""
        return self._reason

    @property
    def progress_percent(self) -> Optional[int]:
        """Download progress in percent, or None when the total is unknown."""
        progress = self._progress
        if progress is None or not progress.total_bytes:
            return None
        return min(100, round(progress.downloaded_bytes / progress.total_bytes * 100))

    def add_observer(self, observer: Callable[[ReadinessState], Any]) -> None:
        """Add a callback invoked with the new state after every event."""
        self._observers.append(observer)

    def _notify_observers(self) -> None:
        for observer in self._observers:
            try:
                observer(self._state)
            except Exception:
                logger.exception("Readiness observer failed")

    def _transition(
        self,
        state: ReadinessState,
        progress: Optional[ModelDownloadProgress] = None,
        reason: Optional[str] = None,
    ) -> None:
        if state != self._state:
            logger.info(f"Model readiness: {self._state.value} -> {state.value}")
        self._state = state
        self._progress = progress
        self._reason = reason
        self._notify_observers()

    def handle_event(self, event: ModelNotification) -> None:
        """Apply one inbound notification."""
        if isinstance(event, ModelDownloadProgress):
            logger.debug(
                f"Model download progress: {event.downloaded_bytes}/"
                f"{event.total_bytes if event.total_bytes is not None else '?'} bytes"
            )
            self._transition(ReadinessState.DOWNLOADING, progress=event)
        elif event.status in ("exists", "finished"):
            self._transition(ReadinessState.READY)
        elif event.status == "downloading":
            self._transition(ReadinessState.DOWNLOADING, progress=self._progress)
        elif event.status == "failed":
            reason = event.message or DEFAULT_FAILURE_REASON
            logger.error(f"Model unavailable: {reason}")
            self._transition(ReadinessState.FAILED, reason=reason)

    async def run(self, queue: asyncio.Queue, stop_event: asyncio.Event) -> None:
        """Consume notifications from the queue until stop_event is set."""
        logger.info("Readiness dispatch loop started")

        while not stop_event.is_set():
            try:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue

                try:
                    self.handle_event(event)
                finally:
                    queue.task_done()

            except asyncio.CancelledError:
                logger.info("Readiness dispatch loop cancelled")
                break

            except Exception as e:
                logger.exception(f"Error handling model notification: {e}")

        logger.info("Readiness dispatch loop stopped")
