from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel


class OnboardingStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self != OnboardingStatus.IN_PROGRESS


class OnboardingSession(BaseModel):
    """One onboarding conversation for one owner.

    Created ``in_progress`` and moved to exactly one terminal status
    (completed, cancelled or expired); terminal sessions are never mutated.
    """

    id: UUID
    owner_id: int
    status: OnboardingStatus = OnboardingStatus.IN_PROGRESS
    summary: Optional[Dict[str, Any]] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status == OnboardingStatus.IN_PROGRESS

    @property
    def is_completed(self) -> bool:
        return self.status == OnboardingStatus.COMPLETED
