"""Recording controller: owns the capture device for one recording at a time."""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, List, Optional

import numpy as np

from .audio_capture import CaptureDevice
from .errors import ModelNotReady
from .models import RawCapture, RecordingSession, SpeechLanguage
from .monitor import SignalMonitor
from .readiness import ModelReadinessTracker

logger = logging.getLogger(__name__)

CaptureSink = Callable[[RawCapture, SpeechLanguage], Any]
UploadSink = Callable[[bytes, SpeechLanguage], Any]


class RecorderState(str, Enum):
    """States of the recording controller."""

    IDLE = "idle"
    CAPTURING = "capturing"
    STOPPING_WITH_DATA = "stopping_with_data"
    STOPPING_EMPTY = "stopping_empty"


class RecordingController:
    """Buffers microphone chunks and hands finished recordings on."""

    def __init__(
        self,
        device: CaptureDevice,
        monitor: SignalMonitor,
        readiness: ModelReadinessTracker,
        on_capture: CaptureSink,
        on_upload: Optional[UploadSink] = None,
    ):
        """Initialize the recording controller.

        Args:
            device: Capture device, owned exclusively while recording.
            monitor: Level meter fed with every captured chunk.
            readiness: Model readiness gate consulted by start().
            on_capture: Receives each non-empty recording and its language.
            on_upload: Receives uploaded files; defaults to nothing.
        """
        self.device = device
        self.monitor = monitor
        self.readiness = readiness
        self.on_capture = on_capture
        self.on_upload = on_upload

        self._state = RecorderState.IDLE
        self._session: Optional[RecordingSession] = None
        self._language: SpeechLanguage = "zh"
        self._chunks: List[bytes] = []
        self._chunk_queue: asyncio.Queue = asyncio.Queue()
        self._dispatch_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> RecorderState:
        return self._state

    @property
    def session(self) -> Optional[RecordingSession]:
        """The recording in progress, if any."""
        return self._session

    @property
    def is_recording(self) -> bool:
        return self._state == RecorderState.CAPTURING

    async def start(self, language: SpeechLanguage) -> None:
        """Acquire the device and start capturing.

        Raises:
            ModelNotReady: If the speech model is not ready.
            DeviceUnavailable: If the device cannot be opened.
        """
        if not self.readiness.is_ready:
            raise ModelNotReady(
                f"Speech model is not ready (state: {self.readiness.state.value})"
            )

        if self._state != RecorderState.IDLE:
            logger.warning("Recording is already running.")
            return

        logger.info(f"Starting recording (Language: {language})")
        self._chunks = []
        self._chunk_queue = asyncio.Queue()

        # DeviceUnavailable propagates; the controller stays idle
        await self.device.open(self._chunk_queue)

        self._language = language
        self._session = RecordingSession(is_recording=True)
        self.monitor.start(self._session)
        self._dispatch_task = asyncio.create_task(self._dispatch_chunks())
        self._state = RecorderState.CAPTURING

    async def _dispatch_chunks(self) -> None:
        """Single consumer of device chunks, in arrival order."""
        while True:
            chunk = await self._chunk_queue.get()
            if chunk is None:
                break
            self._chunks.append(chunk)
            usable = len(chunk) - len(chunk) % 2
            if usable:
                self.monitor.feed(np.frombuffer(chunk[:usable], dtype="<i2"))

    async def _release(self) -> None:
        """Close the device and drain the chunks it already produced."""
        try:
            await self.device.close()
        finally:
            self.monitor.stop()
            task, self._dispatch_task = self._dispatch_task, None
            if task is not None:
                if not task.done():
                    self._chunk_queue.put_nowait(None)
                await task

    async def stop(self) -> Optional[RawCapture]:
        """Stop capturing and hand the recording on.

        Returns:
            The recording, or None if nothing was captured.
        """
        if self._state != RecorderState.CAPTURING:
            logger.warning("Recording is not running.")
            return None

        logger.info("Stopping recording.")
        session = self._session
        try:
            await self._release()
        except Exception:
            self._chunks = []
            self._state = RecorderState.IDLE
            raise
        finally:
            if session is not None:
                session.is_recording = False
            self._session = None

        data = b"".join(self._chunks)
        self._chunks = []

        if not data:
            self._state = RecorderState.STOPPING_EMPTY
            logger.warning("No audio was recorded, skipping transcription.")
            self._state = RecorderState.IDLE
            return None

        self._state = RecorderState.STOPPING_WITH_DATA
        capture = RawCapture(
            data=data,
            sample_rate=self.device.sample_rate,
            channels=self.device.channels,
        )
        logger.info(
            f"Recorded {len(data)} bytes "
            f"({self.device.sample_rate} Hz, {self.device.channels} ch)"
        )
        try:
            self.on_capture(capture, self._language)
        finally:
            self._state = RecorderState.IDLE
        return capture

    def upload_external_file(self, data: bytes, language: SpeechLanguage) -> Any:
        """Hand an already complete audio file to the upload sink.

        Device and monitor state are left untouched.
        """
        if not data:
            logger.warning("Ignoring empty upload.")
            return None
        if self.on_upload is None:
            raise RuntimeError("No upload handler configured")
        logger.info(f"Submitting uploaded audio ({len(data)} bytes)")
        return self.on_upload(data, language)

    async def close(self) -> None:
        """Tear down: release the device and discard any buffered audio."""
        if self._state != RecorderState.CAPTURING:
            return

        logger.info("Closing recorder, discarding the recording in progress.")
        try:
            await self._release()
        finally:
            if self._session is not None:
                self._session.is_recording = False
            self._session = None
            self._chunks = []
            self._state = RecorderState.IDLE
