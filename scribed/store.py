"""Persistent storage of transcription sessions."""

import asyncio
import base64
import logging
import shutil
from pathlib import Path, PurePath
from typing import List, Optional, Protocol

from pydantic import TypeAdapter

from .audio_codec import decode_base64_audio
from .errors import SessionNotFound
from .models import SpeechSession, SpeechSessionBackup, TranscriptSegment

logger = logging.getLogger(__name__)

SESSIONS_FILE = "sessions.json"
SESSIONS_DIR = "sessions"
DEFAULT_AUDIO_FILENAME = "recording.wav"

_session_list = TypeAdapter(List[SpeechSession])
_segment_list = TypeAdapter(List[TranscriptSegment])
_backup_list = TypeAdapter(List[SpeechSessionBackup])


class SessionStore(Protocol):
    """Backing store of transcription sessions, most recent first."""

    async def list_sessions(self) -> List[SpeechSession]: ...

    async def create_session(
        self, session: SpeechSession, audio: bytes
    ) -> SpeechSession: ...

    async def update_session(
        self,
        session_id: str,
        transcript: Optional[str] = None,
        title: Optional[str] = None,
    ) -> SpeechSession: ...

    async def delete_session(self, session_id: str) -> None: ...

    async def read_audio(self, audio_path: str) -> bytes: ...

    async def export_sessions(self) -> List[SpeechSessionBackup]: ...

    async def import_sessions(self, backups: List[SpeechSessionBackup]) -> int: ...


def validate_session_id(session_id: str) -> str:
    """Check that a session id names a single directory under the store.

    Raises:
        ValueError: If the id is empty, a path, or a relative directory name.
    """
    if (
        not session_id
        or session_id != session_id.strip()
        or "/" in session_id
        or "\\" in session_id
        or session_id in (".", "..")
    ):
        raise ValueError(f"Invalid session id: {session_id!r}")
    return session_id


def write_backup_file(path: Path, backups: List[SpeechSessionBackup]) -> None:
    path.write_bytes(_backup_list.dump_json(backups, indent=2))


def read_backup_file(path: Path) -> List[SpeechSessionBackup]:
    """Read an export written by write_backup_file.

    Raises:
        OSError: If the file cannot be read.
        ValidationError: If the file is not a list of session backups.
    """
    return _backup_list.validate_json(path.read_bytes())


def sanitize_audio_filename(name: str) -> str:
    """Reduce an imported filename to a bare, safe file name."""
    trimmed = name.strip()
    if not trimmed or "/" in trimmed or "\\" in trimmed:
        return DEFAULT_AUDIO_FILENAME
    candidate = PurePath(trimmed).name
    if not candidate or candidate in (".", ".."):
        return DEFAULT_AUDIO_FILENAME
    return candidate


class JsonSessionStore:
    """Stores sessions as a JSON index plus one directory per session.

    Layout under base_dir:
        sessions.json                      index, most recent first
        sessions/<id>/recording.wav        audio
        sessions/<id>/transcript.txt       transcript text
        sessions/<id>/segments.json        timed segments
    """

    def __init__(self, base_dir: Path):
        self.base_dir = base_dir
        self.sessions_dir = base_dir / SESSIONS_DIR
        self.sessions_file = base_dir / SESSIONS_FILE

        self._lock = asyncio.Lock()
        self._sessions: Optional[List[SpeechSession]] = None

    def _load(self) -> List[SpeechSession]:
        if self._sessions is None:
            self.sessions_dir.mkdir(parents=True, exist_ok=True)
            if self.sessions_file.exists():
                self._sessions = _session_list.validate_json(
                    self.sessions_file.read_bytes()
                )
            else:
                self._sessions = []
                self.sessions_file.write_bytes(b"[]")
            logger.info(f"Loaded {len(self._sessions)} sessions from {self.base_dir}")
        return self._sessions

    def _persist(self, sessions: List[SpeechSession]) -> None:
        self.sessions_file.write_bytes(_session_list.dump_json(sessions, indent=2))

    def session_dir(self, session_id: str) -> Path:
        return self.sessions_dir / validate_session_id(session_id)

    def audio_relative_path(self, session_id: str, filename: str = DEFAULT_AUDIO_FILENAME) -> str:
        return f"{SESSIONS_DIR}/{session_id}/{filename}"

    async def list_sessions(self) -> List[SpeechSession]:
        async with self._lock:
            sessions = await asyncio.to_thread(self._load)
            return [session.model_copy(deep=True) for session in sessions]

    def _write_session_files(self, session: SpeechSession, audio: bytes) -> None:
        session_dir = self.session_dir(session.id)
        session_dir.mkdir(parents=True, exist_ok=True)
        try:
            (self.base_dir / session.audio_path).write_bytes(audio)
            (session_dir / "transcript.txt").write_text(session.transcript, encoding="utf-8")
            (session_dir / "segments.json").write_bytes(
                _segment_list.dump_json(session.segments, indent=2)
            )
        except OSError:
            shutil.rmtree(session_dir, ignore_errors=True)
            raise

    async def create_session(self, session: SpeechSession, audio: bytes) -> SpeechSession:
        """Store a new session with its audio at the front of the list."""
        async with self._lock:
            sessions = await asyncio.to_thread(self._load)
            if not session.audio_path:
                session = session.model_copy(
                    update={"audio_path": self.audio_relative_path(session.id)}
                )
            await asyncio.to_thread(self._write_session_files, session, audio)

            sessions[:] = [item for item in sessions if item.id != session.id]
            sessions.insert(0, session)
            await asyncio.to_thread(self._persist, sessions)
            logger.info(f"Created session {session.id} ({session.title})")
            return session.model_copy(deep=True)

    async def update_session(
        self,
        session_id: str,
        transcript: Optional[str] = None,
        title: Optional[str] = None,
    ) -> SpeechSession:
        """Update the transcript and/or title of a session.

        Raises:
            SessionNotFound: If no session has the given id.
        """
        async with self._lock:
            sessions = await asyncio.to_thread(self._load)
            index = next(
                (i for i, item in enumerate(sessions) if item.id == session_id), None
            )
            if index is None:
                raise SessionNotFound(f"Session not found: {session_id}")

            update = {}
            if title is not None and title.strip():
                update["title"] = title.strip()
            if transcript is not None:
                update["transcript"] = transcript
            session = sessions[index].model_copy(update=update)

            # The cached index only changes once sessions.json is written
            updated = list(sessions)
            updated[index] = session
            await asyncio.to_thread(self._persist, updated)
            sessions[index] = session

            if transcript is not None:
                transcript_path = self.session_dir(session_id) / "transcript.txt"
                await asyncio.to_thread(
                    self._write_text, transcript_path, transcript
                )

            logger.info(f"Updated session {session_id}")
            return session.model_copy(deep=True)

    @staticmethod
    def _write_text(path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")

    async def delete_session(self, session_id: str) -> None:
        """Delete a session and its files. Unknown ids are ignored."""
        async with self._lock:
            sessions = await asyncio.to_thread(self._load)
            remaining = [item for item in sessions if item.id != session_id]
            if len(remaining) == len(sessions):
                logger.debug(f"Delete of unknown session {session_id} ignored")
                return
            sessions[:] = remaining
            await asyncio.to_thread(self._persist, sessions)
            await asyncio.to_thread(
                shutil.rmtree, self.session_dir(session_id), ignore_errors=True
            )
            logger.info(f"Deleted session {session_id}")

    async def read_audio(self, audio_path: str) -> bytes:
        """Read the audio of a session by its relative path."""
        path = (self.base_dir / audio_path).resolve()
        if not path.is_relative_to(self.base_dir.resolve()):
            raise ValueError(f"Audio path escapes the store: {audio_path}")
        return await asyncio.to_thread(path.read_bytes)

    def _export(self, sessions: List[SpeechSession]) -> List[SpeechSessionBackup]:
        exported = []
        for session in sessions:
            audio = (self.base_dir / session.audio_path).read_bytes()
            filename = PurePath(session.audio_path).name or DEFAULT_AUDIO_FILENAME
            mime = "audio/wav" if filename.lower().endswith(".wav") else "application/octet-stream"
            exported.append(
                SpeechSessionBackup(
                    id=session.id,
                    title=session.title,
                    language=session.language,
                    transcript=session.transcript,
                    segments=session.segments,
                    created_at=session.created_at,
                    audio_filename=filename,
                    audio_base64=f"data:{mime};base64,{base64.b64encode(audio).decode('ascii')}",
                )
            )
        return exported

    async def export_sessions(self) -> List[SpeechSessionBackup]:
        """Export every session, audio included, as a data URL."""
        async with self._lock:
            sessions = await asyncio.to_thread(self._load)
            return await asyncio.to_thread(self._export, sessions)

    def _import_one(self, backup: SpeechSessionBackup) -> SpeechSession:
        audio = decode_base64_audio(backup.audio_base64)
        filename = sanitize_audio_filename(backup.audio_filename)
        session_dir = self.session_dir(backup.id)
        if session_dir.exists():
            shutil.rmtree(session_dir)

        session = SpeechSession(
            id=backup.id,
            title=backup.title,
            language=backup.language,
            transcript=backup.transcript,
            segments=backup.segments,
            audio_path=self.audio_relative_path(backup.id, filename),
            created_at=backup.created_at,
        )
        self._write_session_files(session, audio)
        return session

    async def import_sessions(self, backups: List[SpeechSessionBackup]) -> int:
        """Import exported sessions, replacing existing ones by id.

        Returns:
            Number of imported sessions.

        Raises:
            ValueError: If a backup carries an invalid session id; nothing
                is imported then.
        """
        if not backups:
            return 0
        for backup in backups:
            validate_session_id(backup.id)

        async with self._lock:
            sessions = await asyncio.to_thread(self._load)
            for backup in backups:
                session = await asyncio.to_thread(self._import_one, backup)
                sessions[:] = [item for item in sessions if item.id != session.id]
                sessions.append(session)

            sessions.sort(key=lambda item: item.created_at, reverse=True)
            await asyncio.to_thread(self._persist, sessions)
            logger.info(f"Imported {len(backups)} sessions")
            return len(backups)
