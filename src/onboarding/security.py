from __future__ import annotations

import hashlib
import hmac
from contextvars import ContextVar
from typing import Optional

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from src.onboarding.config import AuthConfig
from src.onboarding.container import AppContainer, get_container

API_KEY_HEADER = "X-API-Key"

_api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)

# Hashed caller id for the current request; read by the audit logger.
_subject: ContextVar[Optional[str]] = ContextVar("onboarding_subject", default=None)


def get_current_subject() -> Optional[str]:
    return _subject.get()


def subject_for(api_key: str) -> str:
    """Stable caller id derived from a key; the key itself is never logged."""

    return "api-key:" + hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]


def _key_allowed(auth: AuthConfig, api_key: str) -> bool:
    candidate = api_key.encode("utf-8")
    return any(hmac.compare_digest(candidate, key.encode("utf-8")) for key in auth.api_keys)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "ApiKey"},
    )


async def get_api_key(
    api_key: Optional[str] = Security(_api_key_header),
    container: AppContainer = Depends(get_container),
) -> Optional[str]:
    """Router dependency checking ``X-API-Key`` against the container's auth config.

    A no-op while auth is disabled. Kept async so the subject is set in the
    request's own context, which sync routes inherit.
    """

    auth = container.auth
    if not auth.enabled:
        _subject.set(None)
        return None

    if not auth.api_keys:
        raise _unauthorized("API-ключи не настроены.")
    if not api_key or not _key_allowed(auth, api_key):
        raise _unauthorized("Неверный или отсутствующий API-ключ.")

    _subject.set(subject_for(api_key))
    return api_key
