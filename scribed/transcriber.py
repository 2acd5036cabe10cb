"""Transcription service backed by faster-whisper."""

import asyncio
import logging
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
from faster_whisper import WhisperModel

from .audio_codec import (
    TARGET_SAMPLE_RATE,
    decode_base64_audio,
    decode_container,
    mixdown,
    resample,
)
from .config import AppConfig
from .errors import CANCELLED_MESSAGE, IN_PROGRESS_MESSAGE, ScribeError, ServiceError
from .models import (
    SpeechLanguage,
    SpeechSession,
    TranscribeRequest,
    TranscribeResponse,
    TranscriptSegment,
)
from .readiness import ModelStatusEvent
from .store import SessionStore

logger = logging.getLogger(__name__)

LANGUAGE_ALIASES = {
    "en": "en",
    "english": "en",
    "zh": "zh",
    "zh-cn": "zh",
    "zh-hans": "zh",
    "chinese": "zh",
}

LANGUAGE_NAMES = {"en": "English", "zh": "Chinese"}

# Nudges Whisper towards simplified Chinese output
CHINESE_INITIAL_PROMPT = "以下是简体中文普通话的句子。"


def parse_language(value: str) -> SpeechLanguage:
    """Normalize a language hint.

    Raises:
        ServiceError: If the language is not supported.
    """
    code = LANGUAGE_ALIASES.get(value.strip().lower())
    if code is None:
        raise ServiceError(f"unsupported language {value}")
    return code


class WhisperTranscriptionService:
    """Transcribes WAV audio with faster-whisper and stores the result.

    Only one transcription runs at a time; a concurrent request fails with an
    "already in progress" error.
    """

    def __init__(
        self,
        config: AppConfig,
        store: SessionStore,
        notifications: Optional[asyncio.Queue] = None,
    ):
        """Initialize the service.

        Args:
            config: Application configuration.
            store: Where finished sessions are created.
            notifications: Queue receiving model status events.
        """
        self.whisper_config = config.whisper
        self.store = store
        self.notifications = notifications

        self._model: Optional[WhisperModel] = None
        self._active_cancel: Optional[threading.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_busy(self) -> bool:
        return self._active_cancel is not None

    def _publish(self, event: ModelStatusEvent) -> None:
        if self.notifications is not None:
            self.notifications.put_nowait(event)

    def load_model(self) -> bool:
        """Load the Whisper model, publishing status events.

        Meant to run in a worker thread; events are handed to the loop thread.

        Returns:
            True if model loaded successfully, False otherwise.
        """
        model_path = self.whisper_config.model
        if self._model:
            logger.warning("Model already loaded")
            self._publish_threadsafe(ModelStatusEvent(status="exists", model_path=model_path))
            return True

        is_local = Path(model_path).is_dir()
        if not is_local:
            self._publish_threadsafe(
                ModelStatusEvent(status="downloading", model_path=model_path)
            )

        try:
            logger.info(
                f"Loading Whisper model '{model_path}' "
                f"(Device: {self.whisper_config.device}, "
                f"Compute: {self.whisper_config.compute_type}, "
                f"CPU threads: {self.whisper_config.cpu_threads})"
            )
            self._model = WhisperModel(
                model_path,
                device=self.whisper_config.device,
                compute_type=self.whisper_config.compute_type,
                download_root=None,
                cpu_threads=self.whisper_config.cpu_threads,
            )
        except Exception as e:
            logger.exception(f"Failed to load Whisper model: {e}")
            self._model = None
            self._publish_threadsafe(
                ModelStatusEvent(status="failed", model_path=model_path, message=str(e))
            )
            return False

        logger.info("Whisper model loaded successfully")
        self._publish_threadsafe(
            ModelStatusEvent(
                status="exists" if is_local else "finished", model_path=model_path
            )
        )
        return True

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Remember the loop that owns the notification queue."""
        self._loop = loop

    def _publish_threadsafe(self, event: ModelStatusEvent) -> None:
        loop = self._loop
        if loop is not None and loop.is_running():
            loop.call_soon_threadsafe(self._publish, event)
        else:
            self._publish(event)

    def _run_transcription(
        self,
        audio: np.ndarray,
        language: SpeechLanguage,
        cancel_event: threading.Event,
    ) -> Tuple[str, List[TranscriptSegment]]:
        """Run transcription in a thread.

        Raises:
            ServiceError: If the model is missing or the task was cancelled.
        """
        if not self._model:
            raise ServiceError("Model not loaded")

        segments_generator, info = self._model.transcribe(
            audio,
            language=language,
            task="transcribe",
            beam_size=self.whisper_config.beam_size,
            condition_on_previous_text=False,
            initial_prompt=CHINESE_INITIAL_PROMPT if language == "zh" else None,
            vad_filter=False,
        )

        lines: List[str] = []
        segments: List[TranscriptSegment] = []
        # Segments are decoded lazily, so each step is a cancellation point
        for segment in segments_generator:
            if cancel_event.is_set():
                raise ServiceError(CANCELLED_MESSAGE)
            text = segment.text.strip()
            if text:
                lines.append(text)
            segments.append(
                TranscriptSegment(start=segment.start, end=segment.end, text=text)
            )

        if cancel_event.is_set():
            raise ServiceError(CANCELLED_MESSAGE)

        logger.debug(
            f"Transcribed {info.duration:.1f}s of audio into {len(segments)} segments"
        )
        return "\n".join(lines), segments

    @staticmethod
    def _prepare_audio(wav: bytes) -> np.ndarray:
        samples, sample_rate = decode_container(wav)
        return resample(mixdown(samples), sample_rate, TARGET_SAMPLE_RATE)

    async def transcribe(self, request: TranscribeRequest) -> TranscribeResponse:
        """Transcribe base64 WAV audio and store it as a new session.

        Raises:
            ServiceError: On a concurrent request, cancellation, bad input or
                transcription failure.
        """
        language = parse_language(request.language)
        if self._active_cancel is not None:
            raise ServiceError(IN_PROGRESS_MESSAGE)

        cancel_event = threading.Event()
        self._active_cancel = cancel_event
        try:
            try:
                wav = decode_base64_audio(request.audio_base64)
                audio = await asyncio.to_thread(self._prepare_audio, wav)
            except ScribeError as e:
                raise ServiceError(f"audio error: {e}") from e

            try:
                transcript, segments = await asyncio.to_thread(
                    self._run_transcription, audio, language, cancel_event
                )
            except ServiceError:
                raise
            except Exception as e:
                if cancel_event.is_set():
                    raise ServiceError(CANCELLED_MESSAGE) from e
                logger.exception("Error during transcription")
                raise ServiceError(f"whisper error: {e}") from e
        finally:
            self._active_cancel = None

        timestamp = datetime.now().astimezone()
        title = (request.session_title or "").strip() or (
            f"{LANGUAGE_NAMES[language]} transcription {timestamp:%H:%M:%S}"
        )
        session = SpeechSession(
            id=str(uuid.uuid4()),
            title=title,
            language=language,
            transcript=transcript,
            segments=segments,
            created_at=timestamp.isoformat(),
        )
        try:
            session = await self.store.create_session(session, wav)
        except Exception as e:
            logger.exception("Failed to store transcription session")
            raise ServiceError(f"io error: {e}") from e

        logger.info(f"Transcribed [{language}] into session {session.id}: {transcript[:100]}")
        return TranscribeResponse(session=session)

    async def cancel(self) -> bool:
        """Ask the running transcription to stop.

        Returns:
            True if a transcription was running.
        """
        cancel_event = self._active_cancel
        if cancel_event is None:
            return False
        logger.info("Cancelling active transcription")
        cancel_event.set()
        return True
