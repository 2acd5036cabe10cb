"""Lifecycle of transcription requests: timing, cancellation, reconciliation."""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol, Set, Union

from .audio_codec import encode_capture, encode_file
from .errors import (
    IN_PROGRESS_MESSAGE,
    AlreadyInProgress,
    DecodeError,
    RemoteCallFailed,
    ScribeError,
    TranscriptionCancelled,
    classify_service_error,
)
from .frames import FrameClock, FrameTicker
from .models import (
    EncodedAudio,
    RawCapture,
    SpeechLanguage,
    SpeechSession,
    TranscribeRequest,
    TranscribeResponse,
    TranscriptionTask,
)
from .sessions import SessionReconciler

logger = logging.getLogger(__name__)


class TranscriptionService(Protocol):
    """Remote transcription call.

    Errors are reported as exceptions whose message contains "cancelled" or
    "already in progress" for those two cases.
    """

    async def transcribe(self, request: TranscribeRequest) -> TranscribeResponse: ...

    async def cancel(self) -> bool: ...


class TranscriptionState(str, Enum):
    """States of the transcription lifecycle."""

    IDLE = "idle"
    RUNNING = "running"
    CANCELLED = "cancelled"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class TranscriptionOutcome:
    """How one transcription attempt ended."""

    state: TranscriptionState
    generation: int
    session: Optional[SpeechSession] = None
    error: Optional[ScribeError] = None


def _encode(source: Union[RawCapture, bytes]) -> EncodedAudio:
    if isinstance(source, RawCapture):
        return encode_capture(source)
    return encode_file(source)


class TranscriptionManager:
    """Runs one transcription attempt at a time and reconciles its result.

    Every attempt gets a generation number. A generation cancelled locally
    always ends as CANCELLED, and results of older generations never touch
    the current task.
    """

    def __init__(
        self,
        service: TranscriptionService,
        reconciler: SessionReconciler,
        frames: FrameClock,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service = service
        self.reconciler = reconciler

        self.task = TranscriptionTask()
        self._state = TranscriptionState.IDLE
        self._last_error: Optional[ScribeError] = None
        self._resume_state = TranscriptionState.IDLE
        self._cancelled_generations: Set[int] = set()
        self._running: Set[asyncio.Task] = set()
        self._ticker = FrameTicker(frames, self._on_tick, clock)

    @property
    def state(self) -> TranscriptionState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == TranscriptionState.RUNNING

    @property
    def last_error(self) -> Optional[ScribeError]:
        return self._last_error

    def _on_tick(self, elapsed: float) -> None:
        self.task.elapsed_seconds = elapsed

    def begin(self) -> int:
        """Start a new attempt: reset the flags and start the ticker.

        Returns:
            The generation of the new attempt.
        """
        self._resume_state = self._state
        self.task.generation += 1
        self.task.cancelled = False
        self.task.active = True
        self.task.elapsed_seconds = 0.0
        self._last_error = None
        self.task.start_timestamp = self._ticker.start()
        self._state = TranscriptionState.RUNNING
        logger.info(f"Transcription {self.task.generation} started")
        return self.task.generation

    def submit(
        self, source: Union[RawCapture, bytes], language: SpeechLanguage
    ) -> asyncio.Task:
        """Begin an attempt for a recording or an uploaded file.

        Returns:
            The task running the attempt; its result is a TranscriptionOutcome.

        Raises:
            AlreadyInProgress: If an attempt is still running.
        """
        if self.is_running:
            logger.warning(
                f"Rejecting submission, transcription {self.task.generation} is running"
            )
            raise AlreadyInProgress(IN_PROGRESS_MESSAGE)
        generation = self.begin()
        task = asyncio.create_task(self._run(generation, source, language))
        self._running.add(task)
        task.add_done_callback(self._running.discard)
        return task

    async def _run(
        self,
        generation: int,
        source: Union[RawCapture, bytes],
        language: SpeechLanguage,
    ) -> TranscriptionOutcome:
        session: Optional[SpeechSession] = None
        error: Optional[ScribeError] = None
        try:
            encoded = await asyncio.to_thread(_encode, source)
            response = await self.service.transcribe(
                TranscribeRequest(audio_base64=encoded.base64, language=language)
            )
            session = response.session
        except asyncio.CancelledError:
            self._finalize(generation, TranscriptionCancelled("transcription task closed"))
            raise
        except DecodeError as e:
            logger.error(f"Transcription {generation}: cannot decode audio: {e}")
            error = e
        except Exception as e:
            error = classify_service_error(e)
            if isinstance(error, TranscriptionCancelled):
                logger.info(f"Transcription {generation} cancelled by the service")
            else:
                logger.error(f"Transcription {generation} failed: {e}")

        outcome = self._finalize(generation, error, session)

        try:
            await self.reconciler.load_all(outcome.session.id if outcome.session else None)
        except RemoteCallFailed as e:
            logger.warning(f"Session refresh after transcription failed: {e}")
        return outcome

    def _finalize(
        self,
        generation: int,
        error: Optional[ScribeError],
        session: Optional[SpeechSession] = None,
    ) -> TranscriptionOutcome:
        if generation in self._cancelled_generations:
            # Local cancellation wins over whatever the service answered
            self._cancelled_generations.discard(generation)
            if generation == self.task.generation:
                self.task.cancelled = False
            logger.info(f"Transcription {generation} finished after cancellation")
            return TranscriptionOutcome(TranscriptionState.CANCELLED, generation)

        if generation != self.task.generation:
            logger.warning(f"Ignoring stale result of transcription {generation}")
            state = (
                TranscriptionState.SUCCEEDED if error is None else TranscriptionState.FAILED
            )
            return TranscriptionOutcome(state, generation, error=error)

        if error is None and session is not None:
            duration = self._ticker.stop()
            self.task.last_duration_seconds = duration
            if duration is not None:
                self.task.elapsed_seconds = duration
            self.reconciler.apply_new(session)
            self._state = TranscriptionState.SUCCEEDED
            logger.info(
                f"Transcription {generation} succeeded in {duration or 0.0:.2f}s "
                f"(Session: {session.id})"
            )
        elif isinstance(error, TranscriptionCancelled):
            duration = self._ticker.stop()
            if duration is not None:
                self.task.last_duration_seconds = duration
                self.task.elapsed_seconds = duration
            self._state = TranscriptionState.CANCELLED
            session = None
            error = None
        elif isinstance(error, AlreadyInProgress):
            # Rejected by a service still busy with an earlier call
            self._ticker.reset()
            self.task.elapsed_seconds = self.task.last_duration_seconds or 0.0
            self._last_error = error
            self._state = self._resume_state
            session = None
        else:
            if error is None:
                error = RemoteCallFailed("Transcription service returned no session")
            self._ticker.reset()
            self.task.elapsed_seconds = 0.0
            self.task.last_duration_seconds = None
            self._last_error = error
            self._state = TranscriptionState.FAILED
            session = None

        self.task.active = False
        self.task.cancelled = False
        return TranscriptionOutcome(self._state, generation, session=session, error=error)

    async def cancel(self) -> bool:
        """Cancel the running attempt.

        The local state leaves RUNNING immediately; the service is then asked
        to stop on a best-effort basis.

        Returns:
            True if an attempt was running.
        """
        if not self.is_running:
            return False

        generation = self.task.generation
        self.task.cancelled = True
        self._cancelled_generations.add(generation)
        duration = self._ticker.stop()
        if duration is not None:
            self.task.last_duration_seconds = duration
            self.task.elapsed_seconds = duration
        self.task.active = False
        self._state = TranscriptionState.CANCELLED
        logger.info(f"Transcription {generation} cancelled")

        try:
            await self.service.cancel()
        except Exception as e:
            logger.warning(f"Cancellation request to the service failed: {e}")
        return True

    async def close(self) -> None:
        """Stop the ticker and abandon in-flight attempts."""
        self._ticker.reset()
        tasks = list(self._running)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.task.active = False
        self.task.cancelled = False
