"""Wires the recording, transcription and session components together."""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Union

from .audio_capture import CaptureDevice, PWRecordDevice
from .config import AppConfig
from .errors import IN_PROGRESS_MESSAGE, AlreadyInProgress, ScribeError
from .frames import FrameClock, LoopFrameClock
from .ipc_models import (
    DaemonStateModel,
    ModelReadinessModel,
    RecordingModel,
    TranscriptionModel,
)
from .models import RawCapture, SpeechLanguage, SpeechSession
from .monitor import SignalMonitor
from .readiness import ModelReadinessTracker
from .recorder import RecordingController
from .sessions import SessionReconciler
from .state import DaemonStateEnum, DaemonStateManager
from .store import JsonSessionStore, SessionStore, read_backup_file, write_backup_file
from .transcriber import WhisperTranscriptionService
from .transcription import TranscriptionManager, TranscriptionOutcome

logger = logging.getLogger(__name__)


class PipelineManager:
    """Owns every pipeline component for the lifetime of the daemon."""

    def __init__(
        self,
        config: AppConfig,
        state_manager: DaemonStateManager,
        frames: Optional[FrameClock] = None,
        store: Optional[SessionStore] = None,
        service=None,
        device: Optional[CaptureDevice] = None,
    ):
        """Initialize the pipeline manager.

        Collaborators default to the production implementations built from
        the configuration.
        """
        self.config = config
        self.state_manager = state_manager
        self.language: SpeechLanguage = config.daemon.language

        self.stop_event = asyncio.Event()
        self.notification_queue: asyncio.Queue = asyncio.Queue()

        self.frames = frames or LoopFrameClock(config.audio.frame_rate_hz)
        self.store = store or JsonSessionStore(config.storage.computed_data_dir)
        self.service = service or WhisperTranscriptionService(
            config, self.store, self.notification_queue
        )

        self.readiness = ModelReadinessTracker()
        self.monitor = SignalMonitor(
            self.frames,
            window_size=config.audio.level_window,
            gain=config.audio.level_gain,
        )
        self.reconciler = SessionReconciler(self.store)
        self.transcription = TranscriptionManager(
            self.service, self.reconciler, self.frames
        )
        self.recorder = RecordingController(
            device or PWRecordDevice(config.audio),
            self.monitor,
            self.readiness,
            on_capture=self._submit,
            on_upload=self._submit,
        )

        self._readiness_task: Optional[asyncio.Task] = None
        self._model_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start background work and load the initial session list."""
        if hasattr(self.service, "bind_loop"):
            self.service.bind_loop(asyncio.get_running_loop())

        self._readiness_task = asyncio.create_task(
            self.readiness.run(self.notification_queue, self.stop_event)
        )
        self._model_task = asyncio.create_task(self.ensure_model())

        try:
            await self.reconciler.load_all()
        except ScribeError as e:
            self.state_manager.set_error(f"Failed to load session history: {e}")

    async def ensure_model(self) -> bool:
        """Load the speech model in a worker thread."""
        loaded = await asyncio.to_thread(self.service.load_model)
        if not loaded:
            reason = self.readiness.reason or "Failed to load the speech model"
            self.state_manager.set_error(reason)
        return loaded

    async def stop(self) -> None:
        """Tear down: release the device, abandon work, stop loops."""
        logger.info("Stopping pipeline")
        self.stop_event.set()

        try:
            await self.recorder.close()
        finally:
            await self.transcription.close()
            await self.reconciler.close()

        if self._readiness_task:
            self._readiness_task.cancel()
            try:
                await self._readiness_task
            except asyncio.CancelledError:
                pass
            self._readiness_task = None

        # A model load cannot be interrupted; it finishes in its thread
        self._model_task = None

    def _submit(
        self, source: Union[RawCapture, bytes], language: SpeechLanguage
    ) -> asyncio.Task:
        task = self.transcription.submit(source, language)
        self.state_manager.set_state(DaemonStateEnum.TRANSCRIBING)
        task.add_done_callback(self._on_transcription_done)
        return task

    def _ensure_not_transcribing(self) -> None:
        if self.transcription.is_running:
            raise AlreadyInProgress(IN_PROGRESS_MESSAGE)

    def _on_transcription_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Transcription task crashed: {exc!r}")
            self.state_manager.set_error(f"Transcription failed: {exc}")
            return

        outcome: TranscriptionOutcome = task.result()
        if outcome.generation != self.transcription.task.generation:
            return
        if outcome.error is not None:
            self.state_manager.set_error(str(outcome.error))
        elif self.state_manager.current_state == DaemonStateEnum.TRANSCRIBING:
            self.state_manager.set_state(DaemonStateEnum.IDLE)

    async def start_recording(self, language: Optional[SpeechLanguage] = None) -> None:
        """Start recording from the microphone.

        Raises:
            ModelNotReady: If the speech model is not ready.
            DeviceUnavailable: If the microphone cannot be opened.
            AlreadyInProgress: If a transcription is running.
        """
        self._ensure_not_transcribing()
        try:
            await self.recorder.start(language or self.language)
        except ScribeError as e:
            self.state_manager.set_error(str(e))
            raise
        if self.recorder.is_recording:
            self.state_manager.set_state(DaemonStateEnum.RECORDING)

    async def stop_recording(self) -> Optional[RawCapture]:
        """Stop recording; a non-empty recording is transcribed.

        Raises:
            AlreadyInProgress: If an upload started transcribing while
                recording; the recording is discarded.
        """
        try:
            capture = await self.recorder.stop()
        except AlreadyInProgress:
            logger.warning("Recording discarded, a transcription is running")
            self.state_manager.set_state(DaemonStateEnum.TRANSCRIBING)
            raise
        if capture is None and self.state_manager.current_state == DaemonStateEnum.RECORDING:
            self.state_manager.set_state(DaemonStateEnum.IDLE)
        return capture

    async def upload_file(
        self, path: Path, language: Optional[SpeechLanguage] = None
    ) -> Optional[asyncio.Task]:
        """Transcribe an audio file from disk.

        Raises:
            AlreadyInProgress: If a transcription is running.
            OSError: If the file cannot be read.
        """
        self._ensure_not_transcribing()
        data = await asyncio.to_thread(path.read_bytes)
        return self.recorder.upload_external_file(data, language or self.language)

    async def cancel_transcription(self) -> bool:
        """Cancel the running transcription, if any."""
        cancelled = await self.transcription.cancel()
        if cancelled and self.state_manager.current_state == DaemonStateEnum.TRANSCRIBING:
            self.state_manager.set_state(DaemonStateEnum.IDLE)
        return cancelled

    def select_session(self, session_id: Optional[str]) -> Optional[SpeechSession]:
        return self.reconciler.select(session_id)

    async def delete_session(self, session_id: str) -> None:
        await self.reconciler.delete(session_id)
        self.state_manager.clear_error()

    async def save_transcript(self, transcript: Optional[str] = None) -> Optional[SpeechSession]:
        """Save the selected session's transcript (or its current draft)."""
        if transcript is not None:
            self.reconciler.set_draft(transcript)
        saved = await self.reconciler.save_draft()
        self.state_manager.clear_error()
        return saved

    async def export_sessions(self, path: Path) -> int:
        """Write every session, audio included, to a backup file."""
        backups = await self.store.export_sessions()
        await asyncio.to_thread(write_backup_file, path, backups)
        logger.info(f"Exported {len(backups)} sessions to {path}")
        return len(backups)

    async def import_sessions(self, path: Path) -> int:
        """Import a backup file and reload the session list.

        Raises:
            OSError: If the file cannot be read.
            ValueError: If the file is not a valid backup.
            DecodeError: If a backup carries malformed audio.
        """
        backups = await asyncio.to_thread(read_backup_file, path)
        count = await self.store.import_sessions(backups)
        await self.reconciler.load_all()
        self.state_manager.clear_error()
        return count

    def snapshot(self) -> DaemonStateModel:
        """Collect the current figures for status reporting."""
        state, error = self.state_manager.get_status()

        recording = None
        session = self.recorder.session
        if session is not None:
            recording = RecordingModel(
                elapsed_seconds=session.elapsed_seconds,
                audio_level=session.audio_level,
            )

        task = self.transcription.task
        return DaemonStateModel(
            state=state,
            last_error=error,
            recording=recording,
            transcription=TranscriptionModel(
                state=self.transcription.state.value,
                elapsed_seconds=task.elapsed_seconds,
                last_duration_seconds=task.last_duration_seconds,
            ),
            model=ModelReadinessModel(
                state=self.readiness.state.value,
                progress_percent=self.readiness.progress_percent,
                reason=self.readiness.reason,
            ),
            selected_session_id=self.reconciler.selected_id,
            has_changes=self.reconciler.has_changes,
        )
