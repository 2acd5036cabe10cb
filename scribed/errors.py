"""Error taxonomy for the recording and transcription pipeline."""

# Substrings the transcription service puts in its error messages. Callers
# route on these, so they must stay stable.
CANCELLED_MARKER = "cancelled"
IN_PROGRESS_MARKER = "already in progress"

CANCELLED_MESSAGE = f"transcription {CANCELLED_MARKER}"
IN_PROGRESS_MESSAGE = f"transcription {IN_PROGRESS_MARKER}"


class ScribeError(Exception):
    """Base class for errors surfaced to the user."""


class DeviceUnavailable(ScribeError):
    """No capture device, or permission to use it was denied."""


class ModelNotReady(ScribeError):
    """Recording was requested before the speech model is ready."""


class DecodeError(ScribeError):
    """Source audio is malformed or in an unsupported format."""


class RemoteCallFailed(ScribeError):
    """A transcription or session store call failed."""


class AlreadyInProgress(RemoteCallFailed):
    """The service is still busy with another transcription."""


class TranscriptionCancelled(ScribeError):
    """The transcription was cancelled. Not a failure."""


class SessionNotFound(ScribeError):
    """No stored session has the requested id."""


class ServiceError(Exception):
    """Opaque failure reported by the transcription service.

    Only the message is part of the contract.
    """


def classify_service_error(exc: BaseException) -> ScribeError:
    """Map a failed service call to the local error taxonomy.

    Args:
        exc: The exception raised by the service call.

    Returns:
        A TranscriptionCancelled, AlreadyInProgress or RemoteCallFailed
        instance carrying the original message.
    """
    if isinstance(exc, ScribeError) and not isinstance(exc, SessionNotFound):
        return exc

    message = str(exc)
    if CANCELLED_MARKER in message:
        return TranscriptionCancelled(message)
    if IN_PROGRESS_MARKER in message:
        return AlreadyInProgress(message)
    return RemoteCallFailed(message or type(exc).__name__)
