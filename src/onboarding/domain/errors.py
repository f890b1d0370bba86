from __future__ import annotations

from typing import Optional


class OnboardingError(Exception):
    """Base class for every error surfaced by the orchestration core.

    ``retryable`` tells the task runner whether another attempt may succeed.
    """

    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ProviderError(OnboardingError):
    """An outbound AI provider call failed."""

    def __init__(self, message: str, provider: Optional[str] = None) -> None:
        super().__init__(message)
        self.provider = provider


class ProviderUnavailable(ProviderError):
    """Connection error or timeout talking to a provider."""

    retryable = True


class ProviderRejected(ProviderError):
    """The provider answered with a non-2xx status or an unusable body."""

    retryable = True

    def __init__(self, message: str, provider: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(message, provider)
        self.status_code = status_code


class UnsupportedInput(ProviderError):
    """Input rejected before calling out (format or size)."""

    retryable = False

    @classmethod
    def unsupported_format(cls, mime_type: str, provider: str) -> "UnsupportedInput":
        return cls(f"Формат {mime_type} не поддерживается провайдером {provider}", provider)

    @classmethod
    def file_too_large(cls, size: int, max_size: int, provider: str) -> "UnsupportedInput":
        size_mb = round(size / 1024 / 1024, 2)
        max_mb = round(max_size / 1024 / 1024, 2)
        return cls(f"Файл слишком большой ({size_mb}MB). Максимум: {max_mb}MB для {provider}", provider)


class AlreadyInProgress(OnboardingError):
    """A previous async request for the same entity is still in flight."""


class NotFound(OnboardingError):
    """Unknown id, or the entity belongs to another owner."""


class SessionNotActive(OnboardingError):
    """A write was attempted against a session in a terminal status."""


class DuplicateActiveSession(OnboardingError):
    """The store refused a second in-progress session for the same owner."""


def error_text(exc: BaseException) -> str:
    """Text stored on a failed record for ``exc``."""

    if isinstance(exc, OnboardingError):
        return exc.message
    return str(exc) or exc.__class__.__name__
