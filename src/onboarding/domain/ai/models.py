from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional
from uuid import UUID


# Conversation turn as sent to a provider: {"role": "user"|"assistant", "content": str}.
HistoryItem = Dict[str, str]


@dataclass(frozen=True)
class ChatReply:
    """Assistant reply with the completion sentinel already stripped."""

    message: str
    is_complete: bool = False


@dataclass(frozen=True)
class TranscriptionRequest:
    audio: bytes
    filename: str
    mime_type: str
    language: Optional[str] = None
    session_id: Optional[UUID] = None

    @property
    def size(self) -> int:
        return len(self.audio)


@dataclass(frozen=True)
class TranscriptionResult:
    text: str
    provider: str
    language: Optional[str] = None
    confidence: Optional[float] = None
    duration: Optional[float] = None

    @property
    def is_empty(self) -> bool:
        return self.text.strip() == ""
