from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Sequence

from fastapi import BackgroundTasks

from src.onboarding.config import Settings
from src.onboarding.container import AppContainer, build_container
from src.onboarding.domain.ai.models import TranscriptionRequest, TranscriptionResult
from src.onboarding.infra.db.bootstrap import Repositories, init_in_memory_repositories
from src.onboarding.infra.storage.audio import LocalAudioStorageBackend
from src.onboarding.services.ai.gateway import ProviderGateway
from src.onboarding.services.tasks.queue import BackgroundTaskQueue, InlineTaskQueue
from src.onboarding.services.voice.backends import validate_audio


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class ScriptedChatClient:
    """Chat provider replaying scripted replies (strings or exceptions to raise).

    Once the script runs out it echoes the message back.
    """

    name = "scripted"

    def __init__(self, replies: Sequence[Any] = (), summary: Any = None) -> None:
        self.replies = list(replies)
        self.summary = summary if summary is not None else {"name": "Alice", "goal": "learn"}
        self.calls: List[Dict[str, Any]] = []
        self.summary_calls: List[List[Dict[str, str]]] = []

    def chat(self, message, session_id, history):
        self.calls.append({"message": message, "session_id": session_id, "history": list(history)})
        reply = self.replies.pop(0) if self.replies else f"echo: {message}"
        if isinstance(reply, Exception):
            raise reply
        return reply

    def summarize(self, messages, session_id):
        self.summary_calls.append(list(messages))
        if isinstance(self.summary, Exception):
            raise self.summary
        return dict(self.summary)


class ScriptedVoiceClient:
    """Voice provider replaying scripted transcripts (strings or exceptions to raise)."""

    def __init__(
        self,
        name: str,
        results: Sequence[Any] = (),
        *,
        formats: FrozenSet[str] = frozenset({"audio/webm", "audio/wav"}),
        max_file_size: int = 1024,
        available: bool = True,
    ) -> None:
        self.name = name
        self.results = list(results)
        self.supported_formats = formats
        self.max_file_size = max_file_size
        self.available = available
        self.calls: List[TranscriptionRequest] = []

    def is_configured(self) -> bool:
        return True

    def is_available(self) -> bool:
        return self.available

    def transcribe(self, request: TranscriptionRequest) -> TranscriptionResult:
        validate_audio(self, request.mime_type, request.size)
        self.calls.append(request)
        result = self.results.pop(0) if self.results else "привет"
        if isinstance(result, Exception):
            raise result
        return TranscriptionResult(
            text=result,
            provider=self.name,
            language=request.language,
            confidence=0.9,
            duration=1.5,
        )


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "ai_provider": "demo",
        "voice_providers": "demo",
        "onboarding_job_tries": 3,
        "onboarding_job_backoff": 10.0,
        "onboarding_session_expiry_hours": 24,
        "stale_reaper_interval_seconds": 0.0,
        "use_sql_repos": False,
    }
    values.update(overrides)
    return Settings(**values)


def make_container(
    tmp_path: Path,
    *,
    chat: Optional[ScriptedChatClient] = None,
    voice: Optional[Sequence[ScriptedVoiceClient]] = None,
    clock: Optional[FakeClock] = None,
    sleep: Optional[RecordingSleep] = None,
    repositories: Optional[Repositories] = None,
    **settings_overrides: Any,
) -> AppContainer:
    """Container with scripted providers, a fake clock and a recording sleep."""

    clock = clock or FakeClock()
    chat = chat or ScriptedChatClient()
    voice = list(voice) if voice is not None else [ScriptedVoiceClient("primary")]
    return build_container(
        make_settings(**settings_overrides),
        repositories=repositories or init_in_memory_repositories(clock),
        gateway=ProviderGateway(chat, voice),
        storage=LocalAudioStorageBackend(tmp_path / "audio"),
        sleep=sleep or RecordingSleep(),
        clock=clock,
    )


def inline_queue(container: AppContainer) -> InlineTaskQueue:
    return InlineTaskQueue(container.runner)


class DeferredTasks:
    """Background tasks held back until the test runs them, as after a response."""

    def __init__(self, container: AppContainer) -> None:
        self.background_tasks = BackgroundTasks()
        self.queue = BackgroundTaskQueue(container.runner, self.background_tasks)

    @property
    def pending(self) -> int:
        return len(self.background_tasks.tasks)

    def run(self) -> None:
        asyncio.run(self.background_tasks())
        self.background_tasks.tasks.clear()
