"""Tests for the transcription lifecycle manager."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest
import pytest_asyncio

from scribed.errors import AlreadyInProgress, DecodeError, RemoteCallFailed, ServiceError
from scribed.frames import ManualFrameClock
from scribed.models import RawCapture, SpeechSession, TranscribeResponse
from scribed.transcription import TranscriptionManager, TranscriptionState


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class ControlledService:
    """Transcription service answered by the test."""

    def __init__(self):
        self.pending = []
        self.cancel_calls = 0

    async def transcribe(self, request):
        future = asyncio.get_running_loop().create_future()
        self.pending.append((request, future))
        return await future

    async def cancel(self):
        self.cancel_calls += 1
        return True

    async def wait_requests(self, count: int) -> None:
        async def poll():
            while len(self.pending) < count:
                await asyncio.sleep(0.001)

        await asyncio.wait_for(poll(), timeout=5.0)

    def succeed(self, index: int, session: SpeechSession) -> None:
        self.pending[index][1].set_result(TranscribeResponse(session=session))

    def fail(self, index: int, message: str) -> None:
        self.pending[index][1].set_exception(ServiceError(message))


class SerialService(ControlledService):
    """Rejects a call while an earlier one is unanswered, like the real service."""

    async def transcribe(self, request):
        if any(not future.done() for _, future in self.pending):
            raise ServiceError("transcription already in progress")
        return await super().transcribe(request)


def make_session(session_id: str) -> SpeechSession:
    return SpeechSession(
        id=session_id,
        title="Test",
        language="en",
        transcript="hello",
        created_at="2026-01-01T00:00:00+00:00",
    )


def make_capture() -> RawCapture:
    samples = (np.sin(np.linspace(0, 50, 1600)) * 8000).astype("<i2")
    return RawCapture(data=samples.tobytes(), sample_rate=16000, channels=1)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def frames():
    return ManualFrameClock()


@pytest.fixture
def service():
    return ControlledService()


@pytest.fixture
def reconciler():
    reconciler = MagicMock()
    reconciler.load_all = AsyncMock(return_value=[])
    return reconciler


@pytest_asyncio.fixture
async def manager(service, reconciler, frames, clock):
    manager = TranscriptionManager(service, reconciler, frames, clock)
    yield manager
    await manager.close()


@pytest.mark.asyncio
async def test_success_records_duration_and_selects_session(
    manager, service, reconciler, clock
):
    task = manager.submit(make_capture(), "en")
    assert manager.is_running
    assert manager.task.active
    await service.wait_requests(1)

    request = service.pending[0][0]
    assert request.language == "en"
    assert request.audio_base64

    clock.now = 3.0
    session = make_session("id-1")
    service.succeed(0, session)
    outcome = await task

    assert outcome.state == TranscriptionState.SUCCEEDED
    assert outcome.session == session
    assert manager.task.last_duration_seconds == pytest.approx(3.0)
    assert not manager.task.active
    reconciler.apply_new.assert_called_once_with(session)
    reconciler.load_all.assert_awaited_once_with("id-1")


@pytest.mark.asyncio
async def test_elapsed_advances_each_frame(manager, service, frames, clock):
    manager.submit(make_capture(), "en")

    clock.now = 1.5
    frames.advance()

    assert manager.task.elapsed_seconds == pytest.approx(1.5)


@pytest.mark.asyncio
async def test_cancel_beats_late_success(manager, service, reconciler, clock):
    task = manager.submit(make_capture(), "en")
    await service.wait_requests(1)

    clock.now = 2.0
    assert await manager.cancel() is True
    assert manager.state == TranscriptionState.CANCELLED
    assert manager.task.last_duration_seconds == pytest.approx(2.0)
    assert service.cancel_calls == 1

    clock.now = 9.0
    service.succeed(0, make_session("late"))
    outcome = await task

    assert outcome.state == TranscriptionState.CANCELLED
    assert manager.state == TranscriptionState.CANCELLED
    assert manager.task.last_duration_seconds == pytest.approx(2.0)
    assert not manager.task.cancelled
    reconciler.apply_new.assert_not_called()
    reconciler.load_all.assert_awaited_once_with(None)


@pytest.mark.asyncio
async def test_cancel_beats_late_failure(manager, service, clock):
    task = manager.submit(make_capture(), "en")
    await service.wait_requests(1)

    clock.now = 1.0
    await manager.cancel()
    service.fail(0, "whisper error: boom")
    outcome = await task

    assert outcome.state == TranscriptionState.CANCELLED
    assert outcome.error is None
    assert manager.last_error is None
    assert manager.task.last_duration_seconds == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_failure_discards_duration(manager, service, clock):
    first = manager.submit(make_capture(), "en")
    await service.wait_requests(1)
    clock.now = 2.0
    service.succeed(0, make_session("ok"))
    await first
    assert manager.task.last_duration_seconds == pytest.approx(2.0)

    second = manager.submit(make_capture(), "en")
    await service.wait_requests(2)
    clock.now = 5.0
    service.fail(1, "whisper error: out of memory")
    outcome = await second

    assert outcome.state == TranscriptionState.FAILED
    assert isinstance(outcome.error, RemoteCallFailed)
    assert "out of memory" in str(outcome.error)
    assert manager.task.last_duration_seconds is None
    assert manager.task.elapsed_seconds == 0.0
    assert manager.last_error is outcome.error


@pytest.mark.asyncio
async def test_service_reported_cancel_keeps_duration(manager, service, clock):
    task = manager.submit(make_capture(), "zh")
    await service.wait_requests(1)

    clock.now = 4.0
    service.fail(0, "transcription cancelled")
    outcome = await task

    assert outcome.state == TranscriptionState.CANCELLED
    assert outcome.error is None
    assert manager.last_error is None
    assert manager.task.last_duration_seconds == pytest.approx(4.0)


@pytest.mark.asyncio
async def test_service_rejection_keeps_previous_figures(manager, service, clock):
    first = manager.submit(make_capture(), "zh")
    await service.wait_requests(1)
    clock.now = 2.0
    service.succeed(0, make_session("done"))
    await first

    second = manager.submit(make_capture(), "zh")
    await service.wait_requests(2)
    clock.now = 6.0
    service.fail(1, "transcription already in progress")
    outcome = await second

    assert isinstance(outcome.error, AlreadyInProgress)
    assert outcome.state == TranscriptionState.SUCCEEDED
    assert manager.state == TranscriptionState.SUCCEEDED
    assert manager.task.last_duration_seconds == pytest.approx(2.0)
    assert manager.task.elapsed_seconds == pytest.approx(2.0)
    assert not manager.task.active


@pytest.mark.asyncio
async def test_submit_while_running_is_rejected(reconciler, frames, clock):
    service = SerialService()
    manager = TranscriptionManager(service, reconciler, frames, clock)
    try:
        first = manager.submit(make_capture(), "en")
        await service.wait_requests(1)

        with pytest.raises(AlreadyInProgress):
            manager.submit(make_capture(), "en")

        assert manager.is_running
        assert manager.task.active
        assert manager.task.generation == 1
        assert len(service.pending) == 1

        clock.now = 3.0
        session = make_session("first")
        service.succeed(0, session)
        outcome = await first

        assert outcome.state == TranscriptionState.SUCCEEDED
        assert manager.task.last_duration_seconds == pytest.approx(3.0)
        reconciler.apply_new.assert_called_once_with(session)
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_result_of_cancelled_generation_leaves_next_attempt_alone(
    manager, service, reconciler, clock
):
    first = manager.submit(make_capture(), "en")
    await service.wait_requests(1)
    await manager.cancel()

    second = manager.submit(make_capture(), "en")
    await service.wait_requests(2)
    assert manager.task.generation == 2

    service.succeed(0, make_session("late"))
    late = await first

    assert late.generation == 1
    assert late.state == TranscriptionState.CANCELLED
    assert manager.is_running
    assert manager.task.active
    reconciler.apply_new.assert_not_called()

    clock.now = 1.0
    fresh_session = make_session("fresh")
    service.succeed(1, fresh_session)
    outcome = await second

    assert outcome.state == TranscriptionState.SUCCEEDED
    reconciler.apply_new.assert_called_once_with(fresh_session)


@pytest.mark.asyncio
async def test_undecodable_upload_fails_without_service_call(manager, service):
    outcome = await manager.submit(b"not an audio file at all", "en")

    assert outcome.state == TranscriptionState.FAILED
    assert isinstance(outcome.error, DecodeError)
    assert service.pending == []


@pytest.mark.asyncio
async def test_cancel_when_idle(manager, service):
    assert await manager.cancel() is False
    assert service.cancel_calls == 0


@pytest.mark.asyncio
async def test_cancel_survives_service_error(manager, service):
    manager.submit(make_capture(), "en")
    await service.wait_requests(1)
    service.cancel = AsyncMock(side_effect=ServiceError("gone"))

    assert await manager.cancel() is True
    assert manager.state == TranscriptionState.CANCELLED


@pytest.mark.asyncio
async def test_refresh_failure_does_not_mask_outcome(manager, service, reconciler):
    reconciler.load_all = AsyncMock(side_effect=RemoteCallFailed("store down"))
    task = manager.submit(make_capture(), "en")
    await service.wait_requests(1)

    service.succeed(0, make_session("id-2"))
    outcome = await task

    assert outcome.state == TranscriptionState.SUCCEEDED


@pytest.mark.asyncio
async def test_close_abandons_running_task(manager, service):
    task = manager.submit(make_capture(), "en")
    await service.wait_requests(1)

    await manager.close()

    assert task.cancelled()
    assert not manager.task.active
