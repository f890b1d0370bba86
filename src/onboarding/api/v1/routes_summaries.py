from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from src.onboarding.container import AppContainer, get_container
from src.onboarding.domain.models.onboarding_session import OnboardingSession
from src.onboarding.security import get_api_key

router = APIRouter(
    prefix="/summaries",
    tags=["summaries"],
    dependencies=[Depends(get_api_key)],
)


class SummaryItem(BaseModel):
    id: UUID
    user_id: int
    summary: Optional[Dict[str, Any]] = None
    completed_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_session(cls, session: OnboardingSession) -> "SummaryItem":
        return cls(
            id=session.id,
            user_id=session.owner_id,
            summary=session.summary,
            completed_at=session.completed_at,
            created_at=session.created_at,
        )


class PageMeta(BaseModel):
    current_page: int
    last_page: int
    per_page: int
    total: int


class SummaryListResponse(BaseModel):
    data: List[SummaryItem]
    meta: PageMeta


@router.get("", response_model=SummaryListResponse)
def list_summaries(
    user_id: Optional[int] = Query(default=None, ge=1),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=15, ge=1, le=100),
    container: AppContainer = Depends(get_container),
) -> SummaryListResponse:
    """Completed sessions with a summary, newest completion first."""

    result = container.onboarding.list_summaries(user_id, page, per_page)
    return SummaryListResponse(
        data=[SummaryItem.from_session(session) for session in result.items],
        meta=PageMeta(
            current_page=result.page,
            last_page=result.last_page,
            per_page=result.per_page,
            total=result.total,
        ),
    )


@router.get("/{session_id}", response_model=SummaryItem)
def get_summary(session_id: UUID, container: AppContainer = Depends(get_container)) -> SummaryItem:
    return SummaryItem.from_session(container.onboarding.get_summary(session_id))
