from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple


DEFAULT_WELCOME_PROMPT = "Начни онбординг. Поприветствуй пользователя тепло и задай первый вопрос."


def _split_list(raw: str) -> List[str]:
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    """Centralized application settings.

    This keeps environment-variable handling in one place so other modules can
    depend on strongly-typed attributes instead of calling os.getenv
    directly.
    """

    # Chat/summarization provider: "anythingllm" (default), "openai" or "demo".
    ai_provider: str = os.getenv("AI_PROVIDER", "anythingllm")

    # Ordered, comma-separated fallback chain of transcription providers.
    voice_providers: str = os.getenv("VOICE_PROVIDERS", "openai")

    # Per-call provider timeouts in seconds. Summaries process a whole transcript.
    ai_chat_timeout: float = float(os.getenv("AI_CHAT_TIMEOUT", "60"))
    ai_summary_timeout: float = float(os.getenv("AI_SUMMARY_TIMEOUT", "120"))

    # AnythingLLM workspace API.
    anythingllm_api_url: str = os.getenv("ANYTHINGLLM_API_URL", "https://chatbot.meta-whale.com")
    anythingllm_api_key: Optional[str] = os.getenv("ANYTHINGLLM_API_KEY")
    anythingllm_workspace: str = os.getenv("ANYTHINGLLM_WORKSPACE", "holionboarding")
    anythingllm_summary_workspace: str = os.getenv("ANYTHINGLLM_SUMMARY_WORKSPACE", "holisummarization")

    # OpenAI (chat via the SDK, Whisper transcription via HTTP).
    openai_api_key: Optional[str] = os.getenv("OPENAI_API_KEY")
    openai_chat_model: str = os.getenv("OPENAI_CHAT_MODEL", "gpt-4.1-mini")
    openai_transcription_model: str = os.getenv("OPENAI_TRANSCRIPTION_MODEL", "whisper-1")

    # Onboarding conversation.
    onboarding_welcome_prompt: str = os.getenv("ONBOARDING_WELCOME_PROMPT", DEFAULT_WELCOME_PROMPT)
    onboarding_session_expiry_hours: int = int(os.getenv("ONBOARDING_SESSION_EXPIRY_HOURS", "24"))

    # Retry policy for background tasks.
    onboarding_job_tries: int = int(os.getenv("ONBOARDING_JOB_TRIES", "3"))
    onboarding_job_backoff: float = float(os.getenv("ONBOARDING_JOB_BACKOFF", "10"))

    # Stale session reaper; 0 disables the periodic sweep (on-demand only).
    stale_reaper_interval_seconds: float = float(os.getenv("STALE_REAPER_INTERVAL_SECONDS", "0"))

    # Voice input.
    voice_default_language: str = os.getenv("VOICE_DEFAULT_LANGUAGE", "ru")
    voice_max_file_size: int = int(os.getenv("VOICE_MAX_FILE_SIZE", str(25 * 1024 * 1024)))
    voice_timeout: float = float(os.getenv("VOICE_TIMEOUT", "60"))
    voice_storage_dir: Path = Path(os.getenv("VOICE_STORAGE_DIR", "voice-uploads"))

    # Optional database configuration for SQL-backed repositories.
    database_url: Optional[str] = os.getenv("DATABASE_URL")
    use_sql_repos: bool = os.getenv("USE_SQL_REPOS", "false").lower() == "true"

    # X-API-Key check on every /api/v1 route; API_KEYS is a comma-separated allow-list.
    api_auth_enabled: bool = os.getenv("API_AUTH_ENABLED", "false").lower() == "true"
    api_keys: str = os.getenv("API_KEYS", "")


settings = Settings()


@dataclass(frozen=True)
class OnboardingConfig:
    welcome_prompt: str = DEFAULT_WELCOME_PROMPT
    session_expiry_hours: int = 24

    @classmethod
    def from_settings(cls, source: Settings) -> "OnboardingConfig":
        return cls(
            welcome_prompt=source.onboarding_welcome_prompt,
            session_expiry_hours=source.onboarding_session_expiry_hours,
        )


@dataclass(frozen=True)
class TaskConfig:
    """Retry policy for queued work."""

    max_tries: int = 3
    backoff_seconds: float = 10.0

    @classmethod
    def from_settings(cls, source: Settings) -> "TaskConfig":
        return cls(
            max_tries=max(1, source.onboarding_job_tries),
            backoff_seconds=max(0.0, source.onboarding_job_backoff),
        )


@dataclass(frozen=True)
class AuthConfig:
    enabled: bool = False
    api_keys: Tuple[str, ...] = ()

    @classmethod
    def from_settings(cls, source: Settings) -> "AuthConfig":
        keys = tuple(key.strip() for key in source.api_keys.split(",") if key.strip())
        return cls(enabled=source.api_auth_enabled, api_keys=keys)


@dataclass(frozen=True)
class VoiceConfig:
    default_language: str = "ru"
    max_file_size: int = 25 * 1024 * 1024
    timeout_seconds: float = 60.0
    providers: List[str] = field(default_factory=lambda: ["openai"])
    storage_dir: Path = Path("voice-uploads")

    @classmethod
    def from_settings(cls, source: Settings) -> "VoiceConfig":
        return cls(
            default_language=source.voice_default_language,
            max_file_size=source.voice_max_file_size,
            timeout_seconds=source.voice_timeout,
            providers=_split_list(source.voice_providers),
            storage_dir=source.voice_storage_dir,
        )


@dataclass(frozen=True)
class AnythingLLMConfig:
    api_url: str
    api_key: Optional[str]
    workspace_slug: str = "holionboarding"
    summary_workspace_slug: str = "holisummarization"
    chat_timeout_seconds: float = 60.0
    summary_timeout_seconds: float = 120.0

    @classmethod
    def from_settings(cls, source: Settings) -> "AnythingLLMConfig":
        return cls(
            api_url=source.anythingllm_api_url.rstrip("/"),
            api_key=source.anythingllm_api_key,
            workspace_slug=source.anythingllm_workspace,
            summary_workspace_slug=source.anythingllm_summary_workspace,
            chat_timeout_seconds=source.ai_chat_timeout,
            summary_timeout_seconds=source.ai_summary_timeout,
        )


@dataclass(frozen=True)
class OpenAIConfig:
    api_key: Optional[str]
    chat_model: str = "gpt-4.1-mini"
    transcription_model: str = "whisper-1"

    @classmethod
    def from_settings(cls, source: Settings) -> "OpenAIConfig":
        return cls(
            api_key=source.openai_api_key,
            chat_model=source.openai_chat_model,
            transcription_model=source.openai_transcription_model,
        )
