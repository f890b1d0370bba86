from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import PurePath
from typing import Optional
from uuid import UUID, uuid4

from src.onboarding.clock import Clock, utcnow
from src.onboarding.config import VoiceConfig
from src.onboarding.domain.ai.models import TranscriptionRequest, TranscriptionResult
from src.onboarding.domain.errors import AlreadyInProgress, NotFound, OnboardingError
from src.onboarding.domain.models.onboarding_message import MessageStatus
from src.onboarding.domain.models.voice_transcription import VoiceTranscription
from src.onboarding.infra.db.repositories import TranscriptionRepository
from src.onboarding.infra.storage.audio import AudioStorageBackend
from src.onboarding.services.ai.gateway import ProviderGateway
from src.onboarding.services.tasks.queue import TaskQueue
from src.onboarding.services.tasks.runner import TranscribeTask

logger = logging.getLogger("voice")

EMPTY_TRANSCRIPT_MESSAGE = "Не удалось распознать речь. Попробуйте ещё раз."
TRANSCRIPTION_IN_PROGRESS = "Предыдущая транскрипция ещё обрабатывается."
DEFAULT_MIME_TYPE = "audio/webm"


@dataclass(frozen=True)
class TranscriptionStatusView:
    transcription_id: UUID
    status: MessageStatus
    completed: bool
    text: Optional[str] = None
    provider: Optional[str] = None
    confidence: Optional[float] = None
    duration: Optional[float] = None
    error: Optional[str] = None
    message: Optional[str] = None


class VoiceTranscriptionService:
    """Synchronous and queued speech-to-text on top of the provider chain."""

    def __init__(
        self,
        transcriptions: TranscriptionRepository,
        gateway: ProviderGateway,
        storage: AudioStorageBackend,
        config: VoiceConfig,
        clock: Clock = utcnow,
    ) -> None:
        self._transcriptions = transcriptions
        self._gateway = gateway
        self._storage = storage
        self._config = config
        self._clock = clock
        self._intake_lock = threading.Lock()

    @property
    def config(self) -> VoiceConfig:
        return self._config

    def transcribe(
        self,
        audio_bytes: bytes,
        filename: str,
        mime_type: Optional[str] = None,
        language: Optional[str] = None,
        session_id: Optional[UUID] = None,
    ) -> TranscriptionResult:
        """Transcribe in-request with provider fallback.

        An empty transcript is a successful result; callers check
        ``result.is_empty``.
        """

        request = TranscriptionRequest(
            audio=audio_bytes,
            filename=filename,
            mime_type=mime_type or DEFAULT_MIME_TYPE,
            language=language or self._config.default_language,
            session_id=session_id,
        )
        self._gateway.validate_audio(request.mime_type, request.size)

        logger.info(
            "Voice transcription started (language=%s, session_id=%s, size=%s)",
            request.language,
            session_id,
            request.size,
        )
        try:
            result = self._gateway.transcribe_with_fallback(request)
        except OnboardingError as exc:
            logger.error("Voice transcription failed: %s", exc.message)
            raise

        logger.info(
            "Voice transcription completed (provider=%s, text_length=%s, confidence=%s)",
            result.provider,
            len(result.text),
            result.confidence,
        )
        return result

    def transcribe_async(
        self,
        owner_id: int,
        audio_bytes: bytes,
        filename: str,
        mime_type: Optional[str] = None,
        language: Optional[str] = None,
        session_id: Optional[UUID] = None,
        *,
        task_queue: TaskQueue,
    ) -> VoiceTranscription:
        """Store the upload, create a ``pending`` record and queue it on ``task_queue``.

        Invalid input is rejected before anything is stored or queued.
        """

        mime_type = mime_type or DEFAULT_MIME_TYPE
        self._gateway.validate_audio(mime_type, len(audio_bytes))

        with self._intake_lock:
            if self.has_processing_transcriptions(owner_id, session_id):
                raise AlreadyInProgress(TRANSCRIPTION_IN_PROGRESS)

            suffix = PurePath(filename).suffix or ".webm"
            stored_path = self._storage.save_file(audio_bytes, suffix=suffix)

            now = self._clock()
            transcription = self._transcriptions.create(
                VoiceTranscription(
                    id=uuid4(),
                    owner_id=owner_id,
                    session_id=session_id,
                    language=language or self._config.default_language,
                    original_filename=filename,
                    stored_path=stored_path,
                    mime_type=mime_type,
                    file_size=len(audio_bytes),
                    created_at=now,
                    updated_at=now,
                )
            )

        task_id = task_queue.enqueue(TranscribeTask(transcription_id=transcription.id))
        logger.info(
            "Voice transcription %s queued for owner %s (task %s)",
            transcription.id,
            owner_id,
            task_id,
        )
        return transcription

    def find_transcription(self, transcription_id: UUID, owner_id: int) -> VoiceTranscription:
        transcription = self._transcriptions.get_for_owner(transcription_id, owner_id)
        if transcription is None:
            raise NotFound("Транскрипция не найдена.")
        return transcription

    def get_status(self, transcription: VoiceTranscription) -> TranscriptionStatusView:
        """Poll view of a transcription.

        Result fields appear only once it completed; ``error`` only once it
        failed. A completed but empty transcript carries an advisory message.
        """

        if transcription.status == MessageStatus.COMPLETED:
            text = (transcription.transcribed_text or "").strip()
            return TranscriptionStatusView(
                transcription_id=transcription.id,
                status=transcription.status,
                completed=True,
                text=text,
                provider=transcription.provider,
                confidence=transcription.confidence,
                duration=transcription.duration,
                message=None if text else EMPTY_TRANSCRIPT_MESSAGE,
            )
        if transcription.status == MessageStatus.FAILED:
            return TranscriptionStatusView(
                transcription_id=transcription.id,
                status=transcription.status,
                completed=True,
                error=transcription.error_message,
            )
        return TranscriptionStatusView(
            transcription_id=transcription.id,
            status=transcription.status,
            completed=False,
        )

    def has_processing_transcriptions(self, owner_id: int, session_id: Optional[UUID] = None) -> bool:
        return self._transcriptions.has_in_progress(owner_id, session_id)

    def is_available(self) -> bool:
        return self._gateway.is_voice_available()
