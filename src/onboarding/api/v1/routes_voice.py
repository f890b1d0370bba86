from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from pydantic import BaseModel

from src.onboarding.container import AppContainer, get_container, get_task_queue
from src.onboarding.domain.models.onboarding_message import MessageStatus
from src.onboarding.security import get_api_key
from src.onboarding.services.audit.service import audit_service
from src.onboarding.services.tasks.queue import TaskQueue
from src.onboarding.services.voice.service import EMPTY_TRANSCRIPT_MESSAGE

router = APIRouter(
    prefix="/voice",
    tags=["voice"],
    dependencies=[Depends(get_api_key)],
)


class TranscribeResponse(BaseModel):
    text: str
    provider: str
    language: Optional[str] = None
    confidence: Optional[float] = None
    duration: Optional[float] = None
    message: Optional[str] = None


class VoiceStatusResponse(BaseModel):
    available: bool
    providers: List[str]


class AsyncTranscribeResponse(BaseModel):
    transcription_id: UUID
    status: MessageStatus = MessageStatus.PENDING


class TranscriptionStatusResponse(BaseModel):
    transcription_id: UUID
    status: MessageStatus
    completed: bool
    text: Optional[str] = None
    provider: Optional[str] = None
    confidence: Optional[float] = None
    duration: Optional[float] = None
    error: Optional[str] = None
    message: Optional[str] = None


@router.post("/transcribe", response_model=TranscribeResponse, response_model_exclude_none=True)
def transcribe(
    audio: UploadFile = File(...),
    user_id: int = Form(..., ge=1),
    language: Optional[str] = Form(default=None, min_length=2, max_length=2),
    session_id: Optional[UUID] = Form(default=None),
    container: AppContainer = Depends(get_container),
) -> TranscribeResponse:
    """Transcribe an uploaded recording within the request.

    Unsupported formats and oversized files are rejected with 422; provider
    failures (after trying every configured provider) with 503.
    """

    result = container.voice.transcribe(
        audio.file.read(),
        audio.filename or "audio.webm",
        audio.content_type,
        language,
        session_id,
    )

    audit_service.log_event(
        action="transcribe_voice",
        resource_type="voice_transcription",
        extra={"user_id": user_id, "provider": result.provider, "empty": result.is_empty},
    )

    if result.is_empty:
        return TranscribeResponse(text="", provider=result.provider, message=EMPTY_TRANSCRIPT_MESSAGE)

    return TranscribeResponse(
        text=result.text,
        provider=result.provider,
        language=result.language,
        confidence=result.confidence,
        duration=result.duration,
    )


@router.get("/status", response_model=VoiceStatusResponse)
def voice_status(container: AppContainer = Depends(get_container)) -> VoiceStatusResponse:
    return VoiceStatusResponse(
        available=container.voice.is_available(),
        providers=container.gateway.voice_providers,
    )


@router.post("/transcribe/async", response_model=AsyncTranscribeResponse, status_code=status.HTTP_202_ACCEPTED)
def transcribe_async(
    audio: UploadFile = File(...),
    user_id: int = Form(..., ge=1),
    language: Optional[str] = Form(default=None, min_length=2, max_length=2),
    session_id: Optional[UUID] = Form(default=None),
    container: AppContainer = Depends(get_container),
    task_queue: TaskQueue = Depends(get_task_queue),
) -> AsyncTranscribeResponse:
    """Store the upload and queue its transcription.

    Returns 409 while another transcription for the same user (and session,
    when given) is still pending or processing.
    """

    transcription = container.voice.transcribe_async(
        user_id,
        audio.file.read(),
        audio.filename or "audio.webm",
        audio.content_type,
        language,
        session_id,
        task_queue=task_queue,
    )

    audit_service.log_event(
        action="enqueue_transcription",
        resource_type="voice_transcription",
        resource_id=str(transcription.id),
        extra={"user_id": user_id, "async": True},
    )

    return AsyncTranscribeResponse(transcription_id=transcription.id)


@router.get(
    "/transcriptions/{transcription_id}",
    response_model=TranscriptionStatusResponse,
    response_model_exclude_none=True,
)
def transcription_status(
    transcription_id: UUID,
    user_id: int = Query(..., ge=1),
    container: AppContainer = Depends(get_container),
) -> TranscriptionStatusResponse:
    service = container.voice
    view = service.get_status(service.find_transcription(transcription_id, user_id))

    return TranscriptionStatusResponse(
        transcription_id=view.transcription_id,
        status=view.status,
        completed=view.completed,
        text=view.text,
        provider=view.provider,
        confidence=view.confidence,
        duration=view.duration,
        error=view.error,
        message=view.message,
    )
