from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Collection, List, Optional
from uuid import UUID

from src.onboarding.domain.models.onboarding_message import MessageStatus, OnboardingMessage
from src.onboarding.domain.models.onboarding_session import OnboardingSession, OnboardingStatus
from src.onboarding.domain.models.voice_transcription import VoiceTranscription


class SessionRepository(ABC):
    @abstractmethod
    def create(self, session: OnboardingSession) -> OnboardingSession:
        """Insert a new session.

        Raises DuplicateActiveSession when the owner already has an
        in-progress session.
        """

    @abstractmethod
    def get(self, session_id: UUID) -> Optional[OnboardingSession]:
        raise NotImplementedError

    @abstractmethod
    def find_active_by_owner(self, owner_id: int) -> Optional[OnboardingSession]:
        raise NotImplementedError

    @abstractmethod
    def latest_for_owner(self, owner_id: int) -> Optional[OnboardingSession]:
        raise NotImplementedError

    @abstractmethod
    def compare_and_transition(
        self,
        session_id: UUID,
        expected: Collection[OnboardingStatus],
        new_status: OnboardingStatus,
        **fields: Any,
    ) -> bool:
        """Atomically move to ``new_status`` if the current status is in ``expected``.

        Auxiliary ``fields`` are written in the same step and ``updated_at``
        is refreshed. Returns False without mutating anything otherwise.
        """

    @abstractmethod
    def list_stale(self, cutoff: datetime, owner_id: Optional[int] = None) -> List[OnboardingSession]:
        """Return in-progress sessions whose ``updated_at`` is older than ``cutoff``."""

    @abstractmethod
    def list_completed(self, *, owner_id: Optional[int] = None, offset: int = 0, limit: int = 15) -> List[OnboardingSession]:
        raise NotImplementedError

    @abstractmethod
    def count_completed(self, *, owner_id: Optional[int] = None) -> int:
        raise NotImplementedError


class MessageRepository(ABC):
    @abstractmethod
    def create(self, message: OnboardingMessage) -> OnboardingMessage:
        raise NotImplementedError

    @abstractmethod
    def get(self, message_id: int) -> Optional[OnboardingMessage]:
        raise NotImplementedError

    @abstractmethod
    def list_for_session(self, session_id: UUID) -> List[OnboardingMessage]:
        """Messages of a session in conversation order."""

    @abstractmethod
    def latest_assistant(self, session_id: UUID) -> Optional[OnboardingMessage]:
        raise NotImplementedError

    @abstractmethod
    def has_in_progress(self, session_id: UUID) -> bool:
        raise NotImplementedError

    @abstractmethod
    def compare_and_transition(
        self,
        message_id: int,
        expected: Collection[MessageStatus],
        new_status: MessageStatus,
        **fields: Any,
    ) -> bool:
        raise NotImplementedError

    @abstractmethod
    def fail_in_progress(self, session_id: UUID, error: str) -> int:
        """Mark every pending/processing message of a session as failed."""


class TranscriptionRepository(ABC):
    @abstractmethod
    def create(self, transcription: VoiceTranscription) -> VoiceTranscription:
        raise NotImplementedError

    @abstractmethod
    def get(self, transcription_id: UUID) -> Optional[VoiceTranscription]:
        raise NotImplementedError

    @abstractmethod
    def get_for_owner(self, transcription_id: UUID, owner_id: int) -> Optional[VoiceTranscription]:
        raise NotImplementedError

    @abstractmethod
    def has_in_progress(self, owner_id: int, session_id: Optional[UUID] = None) -> bool:
        raise NotImplementedError

    @abstractmethod
    def compare_and_transition(
        self,
        transcription_id: UUID,
        expected: Collection[MessageStatus],
        new_status: MessageStatus,
        **fields: Any,
    ) -> bool:
        raise NotImplementedError
