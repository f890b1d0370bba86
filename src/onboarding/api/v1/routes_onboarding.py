from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.onboarding.container import AppContainer, get_container
from src.onboarding.domain.errors import ProviderError
from src.onboarding.security import get_api_key
from src.onboarding.services.audit.service import audit_service

router = APIRouter(
    prefix="/onboarding",
    tags=["onboarding"],
    dependencies=[Depends(get_api_key)],
)

CHAT_UNAVAILABLE = "Не удалось получить ответ от ассистента. Попробуйте позже."
SUMMARY_UNAVAILABLE = "Не удалось создать суммаризацию. Попробуйте позже."


class ValidateUserRequest(BaseModel):
    user_id: int = Field(ge=1)


class ValidateUserResponse(BaseModel):
    user_id: int
    can_start: bool = True


class ChatRequest(BaseModel):
    user_id: int = Field(ge=1)
    session_id: Optional[UUID] = None
    message: Optional[str] = Field(default=None, max_length=2000)


class ChatResponse(BaseModel):
    message: str
    completed: bool
    session_id: UUID


class CompleteRequest(BaseModel):
    user_id: int = Field(ge=1)
    session_id: UUID


class CompleteResponse(BaseModel):
    summary: Dict[str, Any]
    session_id: UUID


class CancelRequest(BaseModel):
    user_id: int = Field(ge=1)
    session_id: Optional[UUID] = None


class CancelResponse(BaseModel):
    session_id: UUID
    cancelled: bool = True


class HistoryResponse(BaseModel):
    messages: List[Dict[str, str]]
    session_id: Optional[UUID] = None
    is_completed: bool = False


@router.post(
    "/validate-user",
    response_model=ValidateUserResponse,
    responses={status.HTTP_409_CONFLICT: {"description": "An active session already exists"}},
)
def validate_user(payload: ValidateUserRequest, container: AppContainer = Depends(get_container)):
    """Check whether the user may start a new onboarding session.

    Returns 409 with ``active_session_id`` when one is already in progress.
    """

    check = container.onboarding.can_start_onboarding(payload.user_id)
    if not check.can_start:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": check.reason, "active_session_id": str(check.active_session_id)},
        )
    return ValidateUserResponse(user_id=payload.user_id)


@router.post("/chat", response_model=ChatResponse)
def chat(payload: ChatRequest, container: AppContainer = Depends(get_container)) -> ChatResponse:
    """Synchronous chat turn. An empty message starts the conversation."""

    service = container.onboarding
    session = service.get_or_create_session(payload.user_id)
    starting = not payload.message

    try:
        reply = service.start_conversation(session) if starting else service.process_user_message(session, payload.message)
    except ProviderError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=CHAT_UNAVAILABLE)

    audit_service.log_event(
        action="start_onboarding" if starting else "onboarding_message",
        resource_type="onboarding_session",
        resource_id=str(session.id),
        extra={"user_id": payload.user_id, "completed": reply.is_complete},
    )

    return ChatResponse(message=reply.message, completed=reply.is_complete, session_id=session.id)


@router.post("/complete", response_model=CompleteResponse)
def complete(payload: CompleteRequest, container: AppContainer = Depends(get_container)) -> CompleteResponse:
    service = container.onboarding
    session = service.find_session(payload.session_id, payload.user_id)

    try:
        summary = service.complete_conversation(session)
    except ProviderError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=SUMMARY_UNAVAILABLE)

    audit_service.log_event(
        action="complete_onboarding",
        resource_type="onboarding_session",
        resource_id=str(session.id),
        extra={"user_id": payload.user_id},
    )

    return CompleteResponse(summary=summary, session_id=session.id)


@router.post("/cancel", response_model=CancelResponse)
def cancel(payload: CancelRequest, container: AppContainer = Depends(get_container)) -> CancelResponse:
    """Cancel the given session, or the user's active one when no id is passed."""

    service = container.onboarding
    if payload.session_id is not None:
        session = service.find_session(payload.session_id, payload.user_id)
    else:
        session = service.get_active_session(payload.user_id)
        if session is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Активная сессия не найдена.")

    if not service.cancel_conversation(session):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Сессия уже завершена.")

    audit_service.log_event(
        action="cancel_onboarding",
        resource_type="onboarding_session",
        resource_id=str(session.id),
        extra={"user_id": payload.user_id},
    )

    return CancelResponse(session_id=session.id)


@router.get("/history", response_model=HistoryResponse)
def history(
    user_id: int = Query(..., ge=1),
    container: AppContainer = Depends(get_container),
) -> HistoryResponse:
    """Conversation of the user's latest session, whatever its status."""

    service = container.onboarding
    session = service.get_latest_session(user_id)
    if session is None:
        return HistoryResponse(messages=[])

    return HistoryResponse(
        messages=service.get_conversation_history(session),
        session_id=session.id,
        is_completed=session.is_completed,
    )
