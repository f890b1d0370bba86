from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from src.onboarding.domain.models.onboarding_message import MessageStatus


class VoiceTranscription(BaseModel):
    """An audio-to-text job, optionally linked to an onboarding session.

    ``session_id`` is informational only; the transcription can exist without
    any session.
    """

    id: UUID
    owner_id: int
    session_id: Optional[UUID] = None
    provider: Optional[str] = None
    language: str
    original_filename: str
    stored_path: str
    mime_type: str
    file_size: int
    status: MessageStatus = MessageStatus.PENDING
    transcribed_text: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    duration: Optional[float] = None  # seconds
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
