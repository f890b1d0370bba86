from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from fastapi import BackgroundTasks, Depends

from src.onboarding.clock import Clock, utcnow
from src.onboarding.config import AuthConfig, OnboardingConfig, Settings, TaskConfig, VoiceConfig, settings
from src.onboarding.infra.db.bootstrap import Repositories, init_repositories
from src.onboarding.infra.storage.audio import AudioStorageBackend, LocalAudioStorageBackend
from src.onboarding.services.ai.gateway import ProviderGateway, build_gateway
from src.onboarding.services.onboarding.reaper import StaleSessionReaper
from src.onboarding.services.onboarding.service import OnboardingService
from src.onboarding.services.tasks.handlers import build_handlers
from src.onboarding.services.tasks.queue import BackgroundTaskQueue, TaskQueue
from src.onboarding.services.tasks.runner import TaskRunner
from src.onboarding.services.voice.service import VoiceTranscriptionService

logger = logging.getLogger("onboarding")


@dataclass
class AppContainer:
    """Everything the HTTP layer needs, wired once per process."""

    repositories: Repositories
    gateway: ProviderGateway
    storage: AudioStorageBackend
    runner: TaskRunner
    onboarding: OnboardingService
    voice: VoiceTranscriptionService
    auth: AuthConfig = field(default_factory=AuthConfig)
    reaper: Optional[StaleSessionReaper] = None

    def start(self) -> None:
        if self.reaper is not None:
            self.reaper.start()

    def stop(self) -> None:
        if self.reaper is not None:
            self.reaper.stop()


def build_container(
    source: Settings = settings,
    *,
    repositories: Optional[Repositories] = None,
    gateway: Optional[ProviderGateway] = None,
    storage: Optional[AudioStorageBackend] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Clock = utcnow,
) -> AppContainer:
    """Wire repositories, providers, the task runner and services.

    Every collaborator can be passed in, which is how tests swap in fake
    providers.
    """

    onboarding_config = OnboardingConfig.from_settings(source)
    task_config = TaskConfig.from_settings(source)
    voice_config = VoiceConfig.from_settings(source)

    repositories = repositories or init_repositories(source, clock)
    gateway = gateway or build_gateway(source)
    storage = storage or LocalAudioStorageBackend(voice_config.storage_dir)

    handlers = build_handlers(
        sessions=repositories.sessions,
        messages=repositories.messages,
        transcriptions=repositories.transcriptions,
        gateway=gateway,
        storage=storage,
        onboarding_config=onboarding_config,
        clock=clock,
    )
    runner = TaskRunner(task_config, handlers, sleep=sleep)

    onboarding = OnboardingService(
        repositories.sessions,
        repositories.messages,
        gateway,
        onboarding_config,
        clock,
    )
    voice = VoiceTranscriptionService(
        repositories.transcriptions,
        gateway,
        storage,
        voice_config,
        clock,
    )

    reaper = None
    if source.stale_reaper_interval_seconds > 0:
        reaper = StaleSessionReaper(onboarding, source.stale_reaper_interval_seconds)

    logger.info(
        "Wired onboarding container (chat_provider=%s, voice_providers=%s)",
        gateway.chat_provider,
        ",".join(gateway.voice_providers) or "-",
    )
    return AppContainer(
        repositories=repositories,
        gateway=gateway,
        storage=storage,
        runner=runner,
        onboarding=onboarding,
        voice=voice,
        auth=AuthConfig.from_settings(source),
        reaper=reaper,
    )


_container: Optional[AppContainer] = None


def get_container() -> AppContainer:
    """FastAPI dependency returning the process-wide container.

    Built lazily on first use; tests override this dependency.
    """

    global _container
    if _container is None:
        _container = build_container()
    return _container


def set_container(container: Optional[AppContainer]) -> None:
    global _container
    _container = container


def get_task_queue(
    background_tasks: BackgroundTasks,
    container: AppContainer = Depends(get_container),
) -> TaskQueue:
    """FastAPI dependency queuing work on the request's background tasks."""

    return BackgroundTaskQueue(container.runner, background_tasks)
