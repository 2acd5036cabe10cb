"""Data structures passed between the capture, encode and transcription stages."""

from dataclasses import dataclass
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

SpeechLanguage = Literal["en", "zh"]


@dataclass(frozen=True)
class RawCapture:
    """Concatenated audio of one recording, before encoding."""

    data: bytes
    sample_rate: int
    channels: int
    sample_format: str = "s16"

    def __len__(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class EncodedAudio:
    """16 kHz mono 16-bit WAV bytes plus their base64 transport form."""

    data: bytes
    base64: str
    num_samples: int


@dataclass
class RecordingSession:
    """Live state of the recording in progress."""

    is_recording: bool = False
    start_timestamp: Optional[float] = None
    elapsed_seconds: float = 0.0
    audio_level: float = 0.0


@dataclass
class TranscriptionTask:
    """Progress of the current transcription attempt."""

    active: bool = False
    cancelled: bool = False
    start_timestamp: Optional[float] = None
    elapsed_seconds: float = 0.0
    last_duration_seconds: Optional[float] = None
    generation: int = 0


class TranscriptSegment(BaseModel):
    """A timed piece of a transcript."""

    start: float
    end: float
    text: str


class SpeechSession(BaseModel):
    """A stored transcription session."""

    id: str
    title: str
    language: SpeechLanguage
    transcript: str = ""
    segments: List[TranscriptSegment] = Field(default_factory=list)
    audio_path: str = ""
    created_at: str


class SpeechSessionBackup(BaseModel):
    """Self-contained export of a session, audio included."""

    id: str
    title: str
    language: SpeechLanguage
    transcript: str
    segments: List[TranscriptSegment] = Field(default_factory=list)
    created_at: str
    audio_filename: str
    audio_base64: str


class TranscribeRequest(BaseModel):
    """Input of the transcription service."""

    audio_base64: str
    language: str
    session_title: Optional[str] = None


class TranscribeResponse(BaseModel):
    """Output of the transcription service."""

    session: SpeechSession
