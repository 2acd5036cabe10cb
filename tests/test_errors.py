"""Tests for service error classification."""

import pytest

from scribed.errors import (
    AlreadyInProgress,
    CANCELLED_MESSAGE,
    DecodeError,
    IN_PROGRESS_MESSAGE,
    RemoteCallFailed,
    ServiceError,
    SessionNotFound,
    TranscriptionCancelled,
    classify_service_error,
)


@pytest.mark.parametrize(
    "message, expected",
    [
        (CANCELLED_MESSAGE, TranscriptionCancelled),
        ("request cancelled by user", TranscriptionCancelled),
        (IN_PROGRESS_MESSAGE, AlreadyInProgress),
        ("whisper error: boom", RemoteCallFailed),
    ],
)
def test_classify_by_message(message, expected):
    error = classify_service_error(ServiceError(message))
    assert type(error) is expected
    assert str(error) == message


def test_in_progress_is_a_remote_failure():
    assert isinstance(classify_service_error(ServiceError(IN_PROGRESS_MESSAGE)), RemoteCallFailed)


def test_local_errors_pass_through():
    error = DecodeError("bad header")
    assert classify_service_error(error) is error


def test_session_not_found_becomes_remote_failure():
    error = classify_service_error(SessionNotFound("gone"))
    assert type(error) is RemoteCallFailed


def test_empty_message_uses_type_name():
    assert str(classify_service_error(TimeoutError())) == "TimeoutError"
