from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from src.onboarding.clock import as_utc
from src.onboarding.domain.models.onboarding_message import MessageRole, MessageStatus, OnboardingMessage
from src.onboarding.domain.models.onboarding_session import OnboardingSession, OnboardingStatus
from src.onboarding.domain.models.voice_transcription import VoiceTranscription


class Base(DeclarativeBase):
    pass


def _optional_utc(value: Optional[datetime]) -> Optional[datetime]:
    return as_utc(value) if value is not None else None


class OnboardingSessionORM(Base):
    __tablename__ = "onboarding_sessions"
    __table_args__ = (
        Index("ix_onboarding_sessions_owner_status", "owner_id", "status"),
        # At most one in-progress session per owner.
        Index(
            "uq_onboarding_sessions_active_owner",
            "owner_id",
            unique=True,
            sqlite_where=text("status = 'in_progress'"),
            postgresql_where=text("status = 'in_progress'"),
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=OnboardingStatus.IN_PROGRESS.value)
    summary: Mapped[Dict[str, Any] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    @classmethod
    def from_domain(cls, session: OnboardingSession) -> "OnboardingSessionORM":
        return cls(
            id=session.id,
            owner_id=session.owner_id,
            status=session.status.value,
            summary=session.summary,
            completed_at=session.completed_at,
            created_at=session.created_at,
            updated_at=session.updated_at,
        )

    def to_domain(self) -> OnboardingSession:
        return OnboardingSession(
            id=self.id,
            owner_id=self.owner_id,
            status=OnboardingStatus(self.status),
            summary=self.summary,
            completed_at=_optional_utc(self.completed_at),
            created_at=as_utc(self.created_at),
            updated_at=as_utc(self.updated_at),
        )


class OnboardingMessageORM(Base):
    __tablename__ = "onboarding_messages"
    __table_args__ = (Index("ix_onboarding_messages_session_status", "session_id", "status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("onboarding_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=MessageStatus.COMPLETED.value)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    @classmethod
    def from_domain(cls, message: OnboardingMessage) -> "OnboardingMessageORM":
        return cls(
            session_id=message.session_id,
            role=message.role.value,
            content=message.content,
            status=message.status.value,
            error_message=message.error_message,
            created_at=message.created_at,
        )

    def to_domain(self) -> OnboardingMessage:
        return OnboardingMessage(
            id=self.id,
            session_id=self.session_id,
            role=MessageRole(self.role),
            content=self.content,
            status=MessageStatus(self.status),
            error_message=self.error_message,
            created_at=as_utc(self.created_at),
        )


class VoiceTranscriptionORM(Base):
    __tablename__ = "voice_transcriptions"
    __table_args__ = (
        Index("ix_voice_transcriptions_owner_status", "owner_id", "status"),
        Index("ix_voice_transcriptions_session", "session_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    # Not a foreign key: a transcription may outlive or predate any session.
    session_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    provider: Mapped[str | None] = mapped_column(String(50), nullable=True)
    language: Mapped[str] = mapped_column(String(10), nullable=False)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    stored_path: Mapped[str] = mapped_column(String(500), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=MessageStatus.PENDING.value)
    transcribed_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    duration: Mapped[float | None] = mapped_column(Float, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    @classmethod
    def from_domain(cls, transcription: VoiceTranscription) -> "VoiceTranscriptionORM":
        return cls(
            id=transcription.id,
            owner_id=transcription.owner_id,
            session_id=transcription.session_id,
            provider=transcription.provider,
            language=transcription.language,
            original_filename=transcription.original_filename,
            stored_path=transcription.stored_path,
            mime_type=transcription.mime_type,
            file_size=transcription.file_size,
            status=transcription.status.value,
            transcribed_text=transcription.transcribed_text,
            confidence=transcription.confidence,
            duration=transcription.duration,
            error_message=transcription.error_message,
            created_at=transcription.created_at,
            updated_at=transcription.updated_at,
        )

    def to_domain(self) -> VoiceTranscription:
        return VoiceTranscription(
            id=self.id,
            owner_id=self.owner_id,
            session_id=self.session_id,
            provider=self.provider,
            language=self.language,
            original_filename=self.original_filename,
            stored_path=self.stored_path,
            mime_type=self.mime_type,
            file_size=self.file_size,
            status=MessageStatus(self.status),
            transcribed_text=self.transcribed_text,
            confidence=self.confidence,
            duration=self.duration,
            error_message=self.error_message,
            created_at=as_utc(self.created_at),
            updated_at=as_utc(self.updated_at),
        )
