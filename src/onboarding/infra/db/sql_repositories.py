from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Collection, Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

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
from src.onboarding.infra.db.models import OnboardingMessageORM, OnboardingSessionORM, VoiceTranscriptionORM
from src.onboarding.infra.db.repositories import (
    MessageRepository,
    SessionRepository,
    TranscriptionRepository,
)
from src.onboarding.infra.db.session import SessionFactory


def _column_values(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value.value if isinstance(value, Enum) else value for key, value in fields.items()}


def _status_values(statuses: Collection[Enum]) -> List[str]:
    return [status.value for status in statuses]


class SqlSessionRepository(SessionRepository):
    """SQL-backed session store.

    Status transitions are single ``UPDATE ... WHERE status IN (...)``
    statements, so the database row lock arbitrates concurrent writers.
    """

    def __init__(self, session_factory: SessionFactory, clock: Clock = utcnow) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def create(self, session: OnboardingSession) -> OnboardingSession:
        db = self._session_factory()
        try:
            db.add(OnboardingSessionORM.from_domain(session))
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise DuplicateActiveSession(f"Owner {session.owner_id} already has an active session") from exc
        finally:
            db.close()
        return session

    def get(self, session_id: UUID) -> Optional[OnboardingSession]:
        db = self._session_factory()
        try:
            orm = db.get(OnboardingSessionORM, session_id)
            return orm.to_domain() if orm is not None else None
        finally:
            db.close()

    def find_active_by_owner(self, owner_id: int) -> Optional[OnboardingSession]:
        db = self._session_factory()
        try:
            orm = db.scalars(
                select(OnboardingSessionORM)
                .where(
                    OnboardingSessionORM.owner_id == owner_id,
                    OnboardingSessionORM.status == OnboardingStatus.IN_PROGRESS.value,
                )
                .order_by(OnboardingSessionORM.created_at.desc())
                .limit(1)
            ).first()
            return orm.to_domain() if orm is not None else None
        finally:
            db.close()

    def latest_for_owner(self, owner_id: int) -> Optional[OnboardingSession]:
        db = self._session_factory()
        try:
            orm = db.scalars(
                select(OnboardingSessionORM)
                .where(OnboardingSessionORM.owner_id == owner_id)
                .order_by(OnboardingSessionORM.created_at.desc())
                .limit(1)
            ).first()
            return orm.to_domain() if orm is not None else None
        finally:
            db.close()

    def compare_and_transition(
        self,
        session_id: UUID,
        expected: Collection[OnboardingStatus],
        new_status: OnboardingStatus,
        **fields: Any,
    ) -> bool:
        db = self._session_factory()
        try:
            result = db.execute(
                update(OnboardingSessionORM)
                .where(
                    OnboardingSessionORM.id == session_id,
                    OnboardingSessionORM.status.in_(_status_values(expected)),
                )
                .values(status=new_status.value, updated_at=self._clock(), **_column_values(fields))
            )
            db.commit()
            return result.rowcount == 1
        finally:
            db.close()

    def list_stale(self, cutoff: datetime, owner_id: Optional[int] = None) -> List[OnboardingSession]:
        db = self._session_factory()
        try:
            query = select(OnboardingSessionORM).where(
                OnboardingSessionORM.status == OnboardingStatus.IN_PROGRESS.value,
                OnboardingSessionORM.updated_at < cutoff,
            )
            if owner_id is not None:
                query = query.where(OnboardingSessionORM.owner_id == owner_id)
            return [orm.to_domain() for orm in db.scalars(query).all()]
        finally:
            db.close()

    def list_completed(self, *, owner_id: Optional[int] = None, offset: int = 0, limit: int = 15) -> List[OnboardingSession]:
        db = self._session_factory()
        try:
            query = (
                self._completed_query(select(OnboardingSessionORM), owner_id)
                .order_by(OnboardingSessionORM.completed_at.desc())
                .offset(offset)
                .limit(limit)
            )
            return [orm.to_domain() for orm in db.scalars(query).all()]
        finally:
            db.close()

    def count_completed(self, *, owner_id: Optional[int] = None) -> int:
        db = self._session_factory()
        try:
            query = self._completed_query(select(func.count()).select_from(OnboardingSessionORM), owner_id)
            return int(db.scalar(query) or 0)
        finally:
            db.close()

    @staticmethod
    def _completed_query(query, owner_id: Optional[int]):
        query = query.where(
            OnboardingSessionORM.status == OnboardingStatus.COMPLETED.value,
            OnboardingSessionORM.summary.is_not(None),
        )
        if owner_id is not None:
            query = query.where(OnboardingSessionORM.owner_id == owner_id)
        return query


class SqlMessageRepository(MessageRepository):
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def create(self, message: OnboardingMessage) -> OnboardingMessage:
        db = self._session_factory()
        try:
            orm = OnboardingMessageORM.from_domain(message)
            db.add(orm)
            db.commit()
            return orm.to_domain()
        finally:
            db.close()

    def get(self, message_id: int) -> Optional[OnboardingMessage]:
        db = self._session_factory()
        try:
            orm = db.get(OnboardingMessageORM, message_id)
            return orm.to_domain() if orm is not None else None
        finally:
            db.close()

    def list_for_session(self, session_id: UUID) -> List[OnboardingMessage]:
        db = self._session_factory()
        try:
            query = (
                select(OnboardingMessageORM)
                .where(OnboardingMessageORM.session_id == session_id)
                .order_by(OnboardingMessageORM.id)
            )
            return [orm.to_domain() for orm in db.scalars(query).all()]
        finally:
            db.close()

    def latest_assistant(self, session_id: UUID) -> Optional[OnboardingMessage]:
        db = self._session_factory()
        try:
            orm = db.scalars(
                select(OnboardingMessageORM)
                .where(
                    OnboardingMessageORM.session_id == session_id,
                    OnboardingMessageORM.role == MessageRole.ASSISTANT.value,
                )
                .order_by(OnboardingMessageORM.id.desc())
                .limit(1)
            ).first()
            return orm.to_domain() if orm is not None else None
        finally:
            db.close()

    def has_in_progress(self, session_id: UUID) -> bool:
        db = self._session_factory()
        try:
            found = db.scalar(
                select(OnboardingMessageORM.id)
                .where(
                    OnboardingMessageORM.session_id == session_id,
                    OnboardingMessageORM.status.in_(_status_values(IN_FLIGHT_STATUSES)),
                )
                .limit(1)
            )
            return found is not None
        finally:
            db.close()

    def compare_and_transition(
        self,
        message_id: int,
        expected: Collection[MessageStatus],
        new_status: MessageStatus,
        **fields: Any,
    ) -> bool:
        db = self._session_factory()
        try:
            result = db.execute(
                update(OnboardingMessageORM)
                .where(
                    OnboardingMessageORM.id == message_id,
                    OnboardingMessageORM.status.in_(_status_values(expected)),
                )
                .values(status=new_status.value, **_column_values(fields))
            )
            db.commit()
            return result.rowcount == 1
        finally:
            db.close()

    def fail_in_progress(self, session_id: UUID, error: str) -> int:
        db = self._session_factory()
        try:
            result = db.execute(
                update(OnboardingMessageORM)
                .where(
                    OnboardingMessageORM.session_id == session_id,
                    OnboardingMessageORM.status.in_(_status_values(IN_FLIGHT_STATUSES)),
                )
                .values(status=MessageStatus.FAILED.value, error_message=error)
            )
            db.commit()
            return result.rowcount
        finally:
            db.close()


class SqlTranscriptionRepository(TranscriptionRepository):
    def __init__(self, session_factory: SessionFactory, clock: Clock = utcnow) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def create(self, transcription: VoiceTranscription) -> VoiceTranscription:
        db = self._session_factory()
        try:
            db.add(VoiceTranscriptionORM.from_domain(transcription))
            db.commit()
        finally:
            db.close()
        return transcription

    def get(self, transcription_id: UUID) -> Optional[VoiceTranscription]:
        db = self._session_factory()
        try:
            orm = db.get(VoiceTranscriptionORM, transcription_id)
            return orm.to_domain() if orm is not None else None
        finally:
            db.close()

    def get_for_owner(self, transcription_id: UUID, owner_id: int) -> Optional[VoiceTranscription]:
        transcription = self.get(transcription_id)
        if transcription is None or transcription.owner_id != owner_id:
            return None
        return transcription

    def has_in_progress(self, owner_id: int, session_id: Optional[UUID] = None) -> bool:
        db = self._session_factory()
        try:
            query = select(VoiceTranscriptionORM.id).where(
                VoiceTranscriptionORM.owner_id == owner_id,
                VoiceTranscriptionORM.status.in_(_status_values(IN_FLIGHT_STATUSES)),
            )
            if session_id is not None:
                query = query.where(VoiceTranscriptionORM.session_id == session_id)
            return db.scalar(query.limit(1)) is not None
        finally:
            db.close()

    def compare_and_transition(
        self,
        transcription_id: UUID,
        expected: Collection[MessageStatus],
        new_status: MessageStatus,
        **fields: Any,
    ) -> bool:
        db = self._session_factory()
        try:
            result = db.execute(
                update(VoiceTranscriptionORM)
                .where(
                    VoiceTranscriptionORM.id == transcription_id,
                    VoiceTranscriptionORM.status.in_(_status_values(expected)),
                )
                .values(status=new_status.value, updated_at=self._clock(), **_column_values(fields))
            )
            db.commit()
            return result.rowcount == 1
        finally:
            db.close()
