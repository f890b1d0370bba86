from __future__ import annotations

import itertools
from datetime import datetime
from threading import Lock
from typing import Any, Collection, Dict, List, Optional
from uuid import UUID

from src.onboarding.clock import Clock, utcnow
from src.onboarding.domain.errors import DuplicateActiveSession
from src.onboarding.domain.models.onboarding_message import (
    IN_FLIGHT_STATUSES,
    MessageRole,
    MessageStatus,
    OnboardingMessage,
)
from src.onboarding.domain.models.onboarding_session import OnboardingSession, OnboardingStatus
from src.onboarding.domain.models.voice_transcription import VoiceTranscription
from src.onboarding.infra.db.repositories import (
    MessageRepository,
    SessionRepository,
    TranscriptionRepository,
)


class InMemorySessionRepository(SessionRepository):
    """Dict-backed session store.

    Every operation runs under one lock and hands out copies, so callers on
    different worker threads never share a mutable entity.
    """

    def __init__(self, clock: Clock = utcnow) -> None:
        self._sessions: Dict[UUID, OnboardingSession] = {}
        self._lock = Lock()
        self._clock = clock

    def create(self, session: OnboardingSession) -> OnboardingSession:
        with self._lock:
            if session.status == OnboardingStatus.IN_PROGRESS and self._active_for(session.owner_id) is not None:
                raise DuplicateActiveSession(f"Owner {session.owner_id} already has an active session")
            self._sessions[session.id] = session.model_copy(deep=True)
            return session.model_copy(deep=True)

    def get(self, session_id: UUID) -> Optional[OnboardingSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session is not None else None

    def find_active_by_owner(self, owner_id: int) -> Optional[OnboardingSession]:
        with self._lock:
            session = self._active_for(owner_id)
            return session.model_copy(deep=True) if session is not None else None

    def latest_for_owner(self, owner_id: int) -> Optional[OnboardingSession]:
        with self._lock:
            owned = [s for s in self._sessions.values() if s.owner_id == owner_id]
            if not owned:
                return None
            return max(owned, key=lambda s: s.created_at).model_copy(deep=True)

    def compare_and_transition(
        self,
        session_id: UUID,
        expected: Collection[OnboardingStatus],
        new_status: OnboardingStatus,
        **fields: Any,
    ) -> bool:
        with self._lock:
            current = self._sessions.get(session_id)
            if current is None or current.status not in expected:
                return False
            updates = dict(fields, status=new_status, updated_at=self._clock())
            self._sessions[session_id] = current.model_copy(update=updates, deep=True)
            return True

    def list_stale(self, cutoff: datetime, owner_id: Optional[int] = None) -> List[OnboardingSession]:
        with self._lock:
            return [
                s.model_copy(deep=True)
                for s in self._sessions.values()
                if s.status == OnboardingStatus.IN_PROGRESS
                and s.updated_at < cutoff
                and (owner_id is None or s.owner_id == owner_id)
            ]

    def list_completed(self, *, owner_id: Optional[int] = None, offset: int = 0, limit: int = 15) -> List[OnboardingSession]:
        with self._lock:
            completed = sorted(
                self._completed(owner_id),
                key=lambda s: s.completed_at or s.updated_at,
                reverse=True,
            )
            return [s.model_copy(deep=True) for s in completed[offset : offset + limit]]

    def count_completed(self, *, owner_id: Optional[int] = None) -> int:
        with self._lock:
            return len(self._completed(owner_id))

    def _active_for(self, owner_id: int) -> Optional[OnboardingSession]:
        active = [
            s
            for s in self._sessions.values()
            if s.owner_id == owner_id and s.status == OnboardingStatus.IN_PROGRESS
        ]
        return max(active, key=lambda s: s.created_at) if active else None

    def _completed(self, owner_id: Optional[int]) -> List[OnboardingSession]:
        return [
            s
            for s in self._sessions.values()
            if s.status == OnboardingStatus.COMPLETED
            and s.summary is not None
            and (owner_id is None or s.owner_id == owner_id)
        ]


class InMemoryMessageRepository(MessageRepository):
    def __init__(self) -> None:
        self._messages: Dict[int, OnboardingMessage] = {}
        self._ids = itertools.count(1)
        self._lock = Lock()

    def create(self, message: OnboardingMessage) -> OnboardingMessage:
        with self._lock:
            stored = message.model_copy(update={"id": next(self._ids)})
            self._messages[stored.id] = stored
            return stored.model_copy()

    def get(self, message_id: int) -> Optional[OnboardingMessage]:
        with self._lock:
            message = self._messages.get(message_id)
            return message.model_copy() if message is not None else None

    def list_for_session(self, session_id: UUID) -> List[OnboardingMessage]:
        with self._lock:
            return [m.model_copy() for m in self._for_session(session_id)]

    def latest_assistant(self, session_id: UUID) -> Optional[OnboardingMessage]:
        with self._lock:
            assistant = [m for m in self._for_session(session_id) if m.role == MessageRole.ASSISTANT]
            return assistant[-1].model_copy() if assistant else None

    def has_in_progress(self, session_id: UUID) -> bool:
        with self._lock:
            return any(m.status in IN_FLIGHT_STATUSES for m in self._for_session(session_id))

    def compare_and_transition(
        self,
        message_id: int,
        expected: Collection[MessageStatus],
        new_status: MessageStatus,
        **fields: Any,
    ) -> bool:
        with self._lock:
            current = self._messages.get(message_id)
            if current is None or current.status not in expected:
                return False
            self._messages[message_id] = current.model_copy(update=dict(fields, status=new_status))
            return True

    def fail_in_progress(self, session_id: UUID, error: str) -> int:
        with self._lock:
            stuck = [m for m in self._for_session(session_id) if m.status in IN_FLIGHT_STATUSES]
            for message in stuck:
                self._messages[message.id] = message.model_copy(
                    update={"status": MessageStatus.FAILED, "error_message": error}
                )
            return len(stuck)

    def _for_session(self, session_id: UUID) -> List[OnboardingMessage]:
        return sorted(
            (m for m in self._messages.values() if m.session_id == session_id),
            key=lambda m: m.id,
        )


class InMemoryTranscriptionRepository(TranscriptionRepository):
    def __init__(self, clock: Clock = utcnow) -> None:
        self._transcriptions: Dict[UUID, VoiceTranscription] = {}
        self._lock = Lock()
        self._clock = clock

    def create(self, transcription: VoiceTranscription) -> VoiceTranscription:
        with self._lock:
            self._transcriptions[transcription.id] = transcription.model_copy()
            return transcription.model_copy()

    def get(self, transcription_id: UUID) -> Optional[VoiceTranscription]:
        with self._lock:
            transcription = self._transcriptions.get(transcription_id)
            return transcription.model_copy() if transcription is not None else None

    def get_for_owner(self, transcription_id: UUID, owner_id: int) -> Optional[VoiceTranscription]:
        transcription = self.get(transcription_id)
        if transcription is None or transcription.owner_id != owner_id:
            return None
        return transcription

    def has_in_progress(self, owner_id: int, session_id: Optional[UUID] = None) -> bool:
        with self._lock:
            return any(
                t.owner_id == owner_id
                and t.status in IN_FLIGHT_STATUSES
                and (session_id is None or t.session_id == session_id)
                for t in self._transcriptions.values()
            )

    def compare_and_transition(
        self,
        transcription_id: UUID,
        expected: Collection[MessageStatus],
        new_status: MessageStatus,
        **fields: Any,
    ) -> bool:
        with self._lock:
            current = self._transcriptions.get(transcription_id)
            if current is None or current.status not in expected:
                return False
            updates = dict(fields, status=new_status, updated_at=self._clock())
            self._transcriptions[transcription_id] = current.model_copy(update=updates)
            return True
