from __future__ import annotations

import logging
from typing import List, Tuple, Type

from fastapi import Request, status
from fastapi.responses import JSONResponse

from src.onboarding.domain.errors import (
    AlreadyInProgress,
    DuplicateActiveSession,
    NotFound,
    OnboardingError,
    ProviderError,
    SessionNotActive,
    UnsupportedInput,
)

logger = logging.getLogger("onboarding")

# Checked in order; UnsupportedInput must precede its ProviderError base.
ERROR_STATUS_CODES: List[Tuple[Type[OnboardingError], int]] = [
    (UnsupportedInput, 422),
    (ProviderError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (AlreadyInProgress, status.HTTP_409_CONFLICT),
    (SessionNotActive, status.HTTP_409_CONFLICT),
    (DuplicateActiveSession, status.HTTP_409_CONFLICT),
    (NotFound, status.HTTP_404_NOT_FOUND),
]


def status_code_for(exc: OnboardingError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def onboarding_error_handler(request: Request, exc: OnboardingError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content={"detail": exc.message})
