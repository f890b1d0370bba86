from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, Optional
from uuid import UUID

from pydantic import BaseModel


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


IN_FLIGHT_STATUSES = frozenset({MessageStatus.PENDING, MessageStatus.PROCESSING})


class OnboardingMessage(BaseModel):
    """A single conversation turn. Messages are append-only.

    ``id`` is assigned by the store and increases with creation order, so it
    doubles as the conversation ordering key.
    """

    id: Optional[int] = None
    session_id: UUID
    role: MessageRole
    content: str = ""
    status: MessageStatus = MessageStatus.COMPLETED
    error_message: Optional[str] = None
    created_at: datetime

    def to_ai_format(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}
