"""Keeps the local session list and selection in sync with the session store."""

import asyncio
import logging
from typing import List, Optional

from .errors import RemoteCallFailed, ScribeError
from .models import SpeechSession, TranscriptSegment
from .store import SessionStore

logger = logging.getLogger(__name__)


class SessionReconciler:
    """Owns the known sessions, the selected one and its draft transcript.

    The list is kept most recent first. The local copy only changes after a
    successful store call.
    """

    def __init__(self, store: SessionStore):
        self.store = store

        self._sessions: List[SpeechSession] = []
        self._current: Optional[SpeechSession] = None
        self._draft = ""
        self._audio_source: Optional[bytes] = None
        self._audio_load_id = 0
        self._audio_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def sessions(self) -> List[SpeechSession]:
        return list(self._sessions)

    @property
    def selected_id(self) -> Optional[str]:
        return self._current.id if self._current else None

    @property
    def current(self) -> Optional[SpeechSession]:
        return self._current

    @property
    def draft(self) -> str:
        return self._draft

    @property
    def segments(self) -> List[TranscriptSegment]:
        return list(self._current.segments) if self._current else []

    @property
    def audio_source(self) -> Optional[bytes]:
        """Audio bytes of the selected session, once resolved."""
        return self._audio_source

    @property
    def has_changes(self) -> bool:
        """Whether the draft differs from the saved transcript."""
        if self._current is None:
            return False
        return self._draft != self._current.transcript

    def _find(self, session_id: str) -> Optional[SpeechSession]:
        return next((item for item in self._sessions if item.id == session_id), None)

    def _apply_session(self, session: Optional[SpeechSession]) -> None:
        self._current = session
        self._draft = session.transcript if session else ""
        self._prepare_audio_source(session)

    def _prepare_audio_source(self, session: Optional[SpeechSession]) -> None:
        self._audio_load_id += 1
        self._audio_source = None
        if self._closed or session is None or not session.audio_path:
            return
        self._audio_task = asyncio.create_task(
            self._resolve_audio(self._audio_load_id, session.audio_path)
        )

    async def _resolve_audio(self, load_id: int, audio_path: str) -> None:
        try:
            audio = await self.store.read_audio(audio_path)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Could not load audio {audio_path}: {e}")
            if self._audio_load_id == load_id:
                self._audio_source = None
            return

        if self._audio_load_id != load_id:
            logger.debug(f"Discarding stale audio for {audio_path}")
            return
        self._audio_source = audio

    async def wait_audio(self) -> Optional[bytes]:
        """Wait for the pending audio resolution, if any."""
        task = self._audio_task
        if task is not None and not task.done():
            await asyncio.shield(task)
        return self._audio_source

    async def load_all(self, preferred_id: Optional[str] = None) -> List[SpeechSession]:
        """Reload the list and pick the selection.

        The selection is preferred_id if listed, else the current selection if
        still listed, else the most recent session.

        Raises:
            RemoteCallFailed: If the store cannot be listed.
        """
        try:
            sessions = await self.store.list_sessions()
        except Exception as e:
            logger.exception("Failed to load sessions")
            raise RemoteCallFailed(f"Failed to load sessions: {e}") from e

        self._sessions = list(sessions)
        if not self._sessions:
            self._apply_session(None)
            return self.sessions

        for target_id in (preferred_id, self.selected_id):
            if target_id:
                existing = self._find(target_id)
                if existing is not None:
                    self._apply_session(existing)
                    return self.sessions

        self._apply_session(self._sessions[0])
        return self.sessions

    def apply_new(self, session: SpeechSession) -> None:
        """Put a freshly created session at the front and select it."""
        self._sessions = [session] + [
            item for item in self._sessions if item.id != session.id
        ]
        self._apply_session(session)

    def select(self, session_id: Optional[str]) -> Optional[SpeechSession]:
        """Select a known session, or clear the selection with None.

        Raises:
            KeyError: If the id is not in the local list.
        """
        if session_id is None:
            self._apply_session(None)
            return None
        session = self._find(session_id)
        if session is None:
            raise KeyError(session_id)
        self._apply_session(session)
        return session

    async def delete(self, session_id: str) -> None:
        """Delete a session, then reload to absorb concurrent changes.

        Raises:
            RemoteCallFailed: If the store call fails.
        """
        try:
            await self.store.delete_session(session_id)
        except Exception as e:
            logger.exception(f"Failed to delete session {session_id}")
            raise RemoteCallFailed(f"Failed to delete session: {e}") from e

        if self.selected_id == session_id:
            self._apply_session(None)
        await self.load_all()

    def set_draft(self, text: str) -> None:
        self._draft = text

    async def update_transcript(self, session_id: str, new_text: str) -> Optional[SpeechSession]:
        """Save a transcript, skipping the store when nothing changed.

        Returns:
            The updated session, or None when the text was unchanged.

        Raises:
            RemoteCallFailed: If the store call fails.
        """
        cached = self._find(session_id)
        if cached is None and self._current is not None and self._current.id == session_id:
            cached = self._current
        if cached is not None and cached.transcript == new_text:
            return None

        try:
            updated = await self.store.update_session(session_id, transcript=new_text)
        except ScribeError as e:
            raise RemoteCallFailed(str(e)) from e
        except Exception as e:
            logger.exception(f"Failed to update session {session_id}")
            raise RemoteCallFailed(f"Failed to save transcript: {e}") from e

        for index, item in enumerate(self._sessions):
            if item.id == updated.id:
                self._sessions[index] = updated
                break
        else:
            self._sessions.insert(0, updated)

        if self._current is not None and self._current.id == updated.id:
            self._current = updated
            self._draft = updated.transcript
        return updated

    async def save_draft(self) -> Optional[SpeechSession]:
        """Save the draft of the selected session."""
        if self._current is None:
            return None
        return await self.update_transcript(self._current.id, self._draft)

    async def close(self) -> None:
        """Cancel any pending audio resolution."""
        self._closed = True
        self._audio_load_id += 1
        task, self._audio_task = self._audio_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                logger.debug("Audio resolution cancelled")
