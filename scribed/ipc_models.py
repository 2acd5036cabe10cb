"""IPC command and response models for scribed daemon."""

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, RootModel

from .models import SpeechLanguage, SpeechSession


class StartCommand(BaseModel):
    """Command to start recording."""

    command: Literal["start"] = "start"
    # If None, the configured default language is used
    language: Optional[SpeechLanguage] = None


class StopCommand(BaseModel):
    """Command to stop recording and transcribe it."""

    command: Literal["stop"] = "stop"


class UploadCommand(BaseModel):
    """Command to transcribe an existing audio file."""

    command: Literal["upload"] = "upload"
    path: str
    language: Optional[SpeechLanguage] = None


class CancelCommand(BaseModel):
    """Command to cancel the running transcription."""

    command: Literal["cancel"] = "cancel"


class StatusCommand(BaseModel):
    """Command to get daemon status."""

    command: Literal["status"] = "status"


class SessionsCommand(BaseModel):
    """Command to list the known sessions."""

    command: Literal["sessions"] = "sessions"


class SelectCommand(BaseModel):
    """Command to select a session."""

    command: Literal["select"] = "select"
    session_id: Optional[str] = None


class DeleteCommand(BaseModel):
    """Command to delete a session."""

    command: Literal["delete"] = "delete"
    session_id: str


class SaveCommand(BaseModel):
    """Command to save the transcript of the selected session."""

    command: Literal["save"] = "save"
    # If None, the current draft is saved
    transcript: Optional[str] = None


class ExportCommand(BaseModel):
    """Command to write all sessions to a backup file."""

    command: Literal["export"] = "export"
    path: str


class ImportCommand(BaseModel):
    """Command to import sessions from a backup file."""

    command: Literal["import"] = "import"
    path: str


class ShutdownCommand(BaseModel):
    """Command to shut down the daemon."""

    command: Literal["shutdown"] = "shutdown"


class SubscribeCommand(BaseModel):
    """Command to subscribe to state change events."""

    command: Literal["subscribe"] = "subscribe"


# Use discriminated union for command parsing
DaemonCommand = Annotated[
    Union[
        StartCommand,
        StopCommand,
        UploadCommand,
        CancelCommand,
        StatusCommand,
        SessionsCommand,
        SelectCommand,
        DeleteCommand,
        SaveCommand,
        ExportCommand,
        ImportCommand,
        ShutdownCommand,
        SubscribeCommand,
    ],
    Field(discriminator="command"),
]


class CommandWrapper(RootModel[DaemonCommand]):
    """Wrapper model for parsing incoming commands."""

    root: DaemonCommand


class RecordingModel(BaseModel):
    """Live recording figures."""

    elapsed_seconds: float
    audio_level: float


class TranscriptionModel(BaseModel):
    """Transcription progress figures."""

    state: str
    elapsed_seconds: float
    last_duration_seconds: Optional[float] = None


class ModelReadinessModel(BaseModel):
    """Speech model readiness."""

    state: str
    progress_percent: Optional[int] = None
    reason: Optional[str] = None


class DaemonStateModel(BaseModel):
    """Model representing daemon state."""

    state: str
    last_error: Optional[str] = None
    recording: Optional[RecordingModel] = None
    transcription: Optional[TranscriptionModel] = None
    model: Optional[ModelReadinessModel] = None
    selected_session_id: Optional[str] = None
    has_changes: bool = False


class AckResponse(BaseModel):
    """Simple acknowledgment response."""

    response_type: Literal["ack"] = "ack"


class StatusResponse(BaseModel):
    """Response containing daemon status."""

    response_type: Literal["status"] = "status"
    status: DaemonStateModel


class SessionsResponse(BaseModel):
    """Response listing the known sessions."""

    response_type: Literal["sessions"] = "sessions"
    sessions: List[SpeechSession]
    selected_session_id: Optional[str] = None


class ErrorResponse(BaseModel):
    """Response indicating an error."""

    response_type: Literal["error"] = "error"
    message: str


class StateNotification(BaseModel):
    """Notification broadcast when daemon state changes."""

    response_type: Literal["state_change"] = "state_change"
    status: DaemonStateModel


DaemonResponse = Annotated[
    Union[
        AckResponse, StatusResponse, SessionsResponse, ErrorResponse, StateNotification
    ],
    Field(discriminator="response_type"),
]


class ResponseWrapper(RootModel[DaemonResponse]):
    """Wrapper model for serializing outgoing responses."""

    root: DaemonResponse

    def model_dump_json(self, **kwargs) -> str:
        """Override to unwrap the response for serialization."""
        return self.root.model_dump_json(**kwargs)
