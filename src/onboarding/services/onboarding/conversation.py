from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from src.onboarding.clock import Clock
from src.onboarding.domain.ai.models import HistoryItem
from src.onboarding.domain.models.onboarding_message import MessageRole, MessageStatus, OnboardingMessage
from src.onboarding.domain.models.onboarding_session import OnboardingStatus
from src.onboarding.infra.db.repositories import MessageRepository, SessionRepository


def conversation_history(
    messages: MessageRepository,
    session_id: UUID,
    *,
    before_id: Optional[int] = None,
) -> List[HistoryItem]:
    """Ordered ``{role, content}`` turns sent to providers.

    Failed turns and empty placeholders are left out. ``before_id`` cuts the
    history off before a given message, so the reply to message N only sees
    turns up to N-1.
    """

    return [
        message.to_ai_format()
        for message in messages.list_for_session(session_id)
        if message.status != MessageStatus.FAILED
        and message.content
        and (before_id is None or message.id < before_id)
    ]


def append_message(
    sessions: SessionRepository,
    messages: MessageRepository,
    clock: Clock,
    *,
    session_id: UUID,
    role: MessageRole,
    content: str = "",
    status: MessageStatus = MessageStatus.COMPLETED,
) -> OnboardingMessage:
    """Append a message and refresh the session's activity timestamp.

    The refresh is a same-status transition, so it is a no-op for sessions
    that are already terminal.
    """

    message = messages.create(
        OnboardingMessage(
            session_id=session_id,
            role=role,
            content=content,
            status=status,
            created_at=clock(),
        )
    )
    sessions.compare_and_transition(session_id, {OnboardingStatus.IN_PROGRESS}, OnboardingStatus.IN_PROGRESS)
    return message
