from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel

from src.onboarding.api.v1.routes_onboarding import ChatRequest
from src.onboarding.container import AppContainer, get_container, get_task_queue
from src.onboarding.domain.models.onboarding_message import MessageStatus
from src.onboarding.security import get_api_key
from src.onboarding.services.audit.service import audit_service
from src.onboarding.services.tasks.queue import TaskQueue

router = APIRouter(
    prefix="/onboarding/async",
    tags=["onboarding-async"],
    dependencies=[Depends(get_api_key)],
)


class AsyncChatResponse(BaseModel):
    session_id: UUID
    status: MessageStatus = MessageStatus.PENDING


class MessageStatusResponse(BaseModel):
    session_id: UUID
    status: MessageStatus
    message: Optional[str] = None
    error: Optional[str] = None
    completed: bool = False


@router.post("/chat", response_model=AsyncChatResponse, status_code=status.HTTP_202_ACCEPTED)
def chat_async(
    payload: ChatRequest,
    container: AppContainer = Depends(get_container),
    task_queue: TaskQueue = Depends(get_task_queue),
) -> AsyncChatResponse:
    """Queue a chat turn; it runs once the 202 response has been sent.

    Clients poll ``/onboarding/async/status`` until the status is
    ``completed`` or ``failed``. Returns 409 while a previous turn of the same
    session is still pending or processing.
    """

    service = container.onboarding
    session = service.get_or_create_session(payload.user_id)

    if payload.message:
        message = service.process_message_async(session, payload.message, task_queue)
        extra = {"user_id": payload.user_id, "message_id": message.id}
    else:
        service.start_conversation_async(session, task_queue)
        extra = {"user_id": payload.user_id, "start": True}

    audit_service.log_event(
        action="enqueue_onboarding_message",
        resource_type="onboarding_session",
        resource_id=str(session.id),
        extra=extra,
    )

    return AsyncChatResponse(session_id=session.id)


@router.get("/status", response_model=MessageStatusResponse)
def message_status(
    user_id: int = Query(..., ge=1),
    session_id: UUID = Query(...),
    container: AppContainer = Depends(get_container),
) -> MessageStatusResponse:
    service = container.onboarding
    session = service.find_session(session_id, user_id)
    view = service.get_message_status(session)

    return MessageStatusResponse(
        session_id=session.id,
        status=view.status,
        message=view.message,
        error=view.error,
        completed=view.completed,
    )
