"""Tests for the pipeline manager wiring."""

import asyncio
import io
import itertools
from typing import List, Optional
from unittest.mock import MagicMock

import numpy as np
import pytest
import pytest_asyncio
import soundfile as sf

from scribed.config import AppConfig, StorageConfig
from scribed.errors import (
    CANCELLED_MESSAGE,
    AlreadyInProgress,
    DeviceUnavailable,
    ModelNotReady,
    ServiceError,
)
from scribed.frames import ManualFrameClock
from scribed.models import SpeechSession, TranscribeResponse
from scribed.pipeline_manager import PipelineManager
from scribed.readiness import ModelStatusEvent
from scribed.state import DaemonStateEnum, DaemonStateManager
from scribed.store import JsonSessionStore
from scribed.transcription import TranscriptionState


class FakeDevice:
    sample_rate = 16000
    channels = 1

    def __init__(self, chunks: Optional[List[bytes]] = None):
        self.chunks = chunks if chunks is not None else [b"\x00\x10" * 800]
        self.fail_open = False
        self.close_calls = 0
        self._queue = None

    async def open(self, chunk_queue):
        if self.fail_open:
            raise DeviceUnavailable("No microphone found")
        self._queue = chunk_queue

    async def close(self):
        self.close_calls += 1
        if self._queue is not None:
            for chunk in self.chunks:
                self._queue.put_nowait(chunk)
            self._queue = None


class FakeService:
    """Transcription service that stores a session per request."""

    def __init__(self, store):
        self.store = store
        self.load_model = MagicMock(return_value=True)
        self.requests = []
        self.gate: Optional[asyncio.Event] = None
        self.error: Optional[str] = None
        self.cancel_requested = False
        self._ids = itertools.count(1)

    async def transcribe(self, request):
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.cancel_requested:
            raise ServiceError(CANCELLED_MESSAGE)
        if self.error:
            raise ServiceError(self.error)
        session = SpeechSession(
            id=f"session-{next(self._ids)}",
            title="Recorded",
            language=request.language,
            transcript="hello",
            created_at="2026-03-01T12:00:00+00:00",
        )
        session = await self.store.create_session(session, b"RIFF")
        return TranscribeResponse(session=session)

    async def cancel(self):
        self.cancel_requested = True
        if self.gate is not None:
            self.gate.set()
        return True


async def wait_until(predicate, timeout: float = 5.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout=timeout)


@pytest.fixture
def config(tmp_path):
    return AppConfig(storage=StorageConfig(data_dir=tmp_path / "data"))


@pytest.fixture
def state_manager():
    return DaemonStateManager()


@pytest.fixture
def device():
    return FakeDevice()


@pytest.fixture
def store(tmp_path):
    return JsonSessionStore(tmp_path / "data")


@pytest.fixture
def service(store):
    return FakeService(store)


@pytest_asyncio.fixture
async def manager(config, state_manager, store, service, device):
    manager = PipelineManager(
        config,
        state_manager,
        frames=ManualFrameClock(),
        store=store,
        service=service,
        device=device,
    )
    await manager.start()
    await manager._model_task
    manager.readiness.handle_event(ModelStatusEvent(status="exists"))
    yield manager
    await manager.stop()


@pytest.mark.asyncio
async def test_record_and_transcribe(manager, state_manager, service):
    await manager.start_recording("en")
    assert state_manager.current_state == DaemonStateEnum.RECORDING

    capture = await manager.stop_recording()
    assert len(capture) == 1600
    assert state_manager.current_state == DaemonStateEnum.TRANSCRIBING

    await wait_until(lambda: state_manager.current_state == DaemonStateEnum.IDLE)

    assert service.requests[0].language == "en"
    assert manager.reconciler.selected_id == "session-1"
    assert manager.transcription.state == TranscriptionState.SUCCEEDED


@pytest.mark.asyncio
async def test_default_language(manager, service, state_manager):
    await manager.start_recording()
    await manager.stop_recording()
    await wait_until(lambda: state_manager.current_state == DaemonStateEnum.IDLE)

    assert service.requests[0].language == "zh"


@pytest.mark.asyncio
async def test_empty_recording_returns_to_idle(manager, state_manager, device, service):
    device.chunks = []

    await manager.start_recording("en")
    assert await manager.stop_recording() is None

    assert state_manager.current_state == DaemonStateEnum.IDLE
    assert service.requests == []


@pytest.mark.asyncio
async def test_start_requires_model(manager, state_manager, device):
    manager.readiness.handle_event(ModelStatusEvent(status="downloading"))

    with pytest.raises(ModelNotReady):
        await manager.start_recording("en")

    assert state_manager.current_state == DaemonStateEnum.ERROR
    assert "not ready" in state_manager.last_error


@pytest.mark.asyncio
async def test_device_unavailable(manager, state_manager, device):
    device.fail_open = True

    with pytest.raises(DeviceUnavailable):
        await manager.start_recording("en")

    assert state_manager.get_status() == ("error", "No microphone found")


@pytest.mark.asyncio
async def test_upload_file(manager, state_manager, service, tmp_path):
    path = tmp_path / "clip.wav"
    buffer = io.BytesIO()
    sf.write(buffer, np.zeros(8000, dtype=np.float32), 8000, format="WAV", subtype="PCM_16")
    path.write_bytes(buffer.getvalue())

    task = await manager.upload_file(path, "en")
    outcome = await task

    assert outcome.state == TranscriptionState.SUCCEEDED
    assert manager.reconciler.selected_id == outcome.session.id
    await wait_until(lambda: state_manager.current_state == DaemonStateEnum.IDLE)


@pytest.mark.asyncio
async def test_upload_missing_file(manager, tmp_path):
    with pytest.raises(OSError):
        await manager.upload_file(tmp_path / "missing.wav")


@pytest.mark.asyncio
async def test_cancel_transcription(manager, state_manager, service):
    service.gate = asyncio.Event()
    await manager.start_recording("en")
    await manager.stop_recording()
    await wait_until(lambda: len(service.requests) == 1)

    assert await manager.cancel_transcription() is True
    assert state_manager.current_state == DaemonStateEnum.IDLE
    assert manager.transcription.state == TranscriptionState.CANCELLED

    await wait_until(lambda: not manager.transcription._running)
    assert manager.reconciler.selected_id is None
    assert state_manager.current_state == DaemonStateEnum.IDLE


@pytest.mark.asyncio
async def test_cancel_without_transcription(manager):
    assert await manager.cancel_transcription() is False


@pytest.mark.asyncio
async def test_failed_transcription_sets_error(manager, state_manager, service):
    service.error = "whisper error: boom"

    await manager.start_recording("en")
    await manager.stop_recording()
    await wait_until(lambda: state_manager.current_state == DaemonStateEnum.ERROR)

    assert "boom" in state_manager.last_error
    assert manager.transcription.task.last_duration_seconds is None


@pytest.mark.asyncio
async def test_save_transcript(manager, state_manager, store):
    await manager.start_recording("en")
    await manager.stop_recording()
    await wait_until(lambda: state_manager.current_state == DaemonStateEnum.IDLE)

    saved = await manager.save_transcript("edited text")

    assert saved.transcript == "edited text"
    assert (await store.list_sessions())[0].transcript == "edited text"


@pytest.mark.asyncio
async def test_select_and_delete(manager, state_manager):
    for _ in range(2):
        await manager.start_recording("en")
        await manager.stop_recording()
        await wait_until(lambda: state_manager.current_state == DaemonStateEnum.IDLE)

    assert manager.select_session("session-1").id == "session-1"

    await manager.delete_session("session-1")

    assert [s.id for s in manager.reconciler.sessions] == ["session-2"]
    assert manager.reconciler.selected_id == "session-2"


@pytest.mark.asyncio
async def test_snapshot(manager):
    await manager.start_recording("en")

    status = manager.snapshot()

    assert status.state == "recording"
    assert status.recording is not None
    assert status.model.state == "ready"
    assert status.transcription.state == "idle"


@pytest.mark.asyncio
async def test_stop_releases_device(manager, device):
    await manager.start_recording("en")

    await manager.stop()

    assert device.close_calls == 1
    assert not manager.recorder.is_recording


@pytest.mark.asyncio
async def test_model_load_failure_sets_error(config, state_manager, store, device):
    service = FakeService(store)
    service.load_model.return_value = False
    manager = PipelineManager(
        config, state_manager, frames=ManualFrameClock(), store=store, service=service, device=device
    )

    assert await manager.ensure_model() is False
    assert state_manager.current_state == DaemonStateEnum.ERROR


def write_wav(path) -> None:
    buffer = io.BytesIO()
    sf.write(buffer, np.zeros(8000, dtype=np.float32), 8000, format="WAV", subtype="PCM_16")
    path.write_bytes(buffer.getvalue())


@pytest.mark.asyncio
async def test_refuses_new_work_while_transcribing(manager, state_manager, service, tmp_path):
    service.gate = asyncio.Event()
    await manager.start_recording("en")
    await manager.stop_recording()
    await wait_until(lambda: len(service.requests) == 1)

    with pytest.raises(AlreadyInProgress):
        await manager.start_recording("en")
    path = tmp_path / "clip.wav"
    write_wav(path)
    with pytest.raises(AlreadyInProgress):
        await manager.upload_file(path, "en")

    assert state_manager.current_state == DaemonStateEnum.TRANSCRIBING
    assert not manager.recorder.is_recording
    assert len(service.requests) == 1

    service.gate.set()
    await wait_until(lambda: state_manager.current_state == DaemonStateEnum.IDLE)
    assert manager.reconciler.selected_id == "session-1"
    assert manager.transcription.state == TranscriptionState.SUCCEEDED


@pytest.mark.asyncio
async def test_stop_while_upload_transcribes(manager, state_manager, service, device, tmp_path):
    service.gate = asyncio.Event()
    await manager.start_recording("en")
    path = tmp_path / "clip.wav"
    write_wav(path)
    await manager.upload_file(path, "en")

    with pytest.raises(AlreadyInProgress):
        await manager.stop_recording()

    assert device.close_calls == 1
    assert not manager.recorder.is_recording
    assert state_manager.current_state == DaemonStateEnum.TRANSCRIBING
    assert manager.transcription.is_running

    service.gate.set()
    await wait_until(lambda: state_manager.current_state == DaemonStateEnum.IDLE)


@pytest.mark.asyncio
async def test_export_then_import(manager, state_manager, tmp_path):
    await manager.start_recording("en")
    await manager.stop_recording()
    await wait_until(lambda: state_manager.current_state == DaemonStateEnum.IDLE)
    backup = tmp_path / "backup.json"

    assert await manager.export_sessions(backup) == 1
    await manager.delete_session("session-1")
    assert manager.reconciler.sessions == []

    assert await manager.import_sessions(backup) == 1

    assert [s.id for s in manager.reconciler.sessions] == ["session-1"]
    assert manager.reconciler.selected_id == "session-1"
    assert await manager.reconciler.wait_audio() == b"RIFF"


@pytest.mark.asyncio
async def test_import_rejects_invalid_file(manager, tmp_path):
    backup = tmp_path / "backup.json"
    backup.write_text('{"not": "a list"}')

    with pytest.raises(ValueError):
        await manager.import_sessions(backup)


@pytest.mark.asyncio
async def test_successful_save_clears_error(manager, state_manager):
    await manager.start_recording("en")
    await manager.stop_recording()
    await wait_until(lambda: state_manager.current_state == DaemonStateEnum.IDLE)
    state_manager.set_error("Microphone unavailable")

    await manager.save_transcript("edited")

    assert state_manager.get_status() == ("idle", None)
