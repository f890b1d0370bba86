from __future__ import annotations

import logging
from typing import Dict, List

from src.onboarding.clock import Clock, utcnow
from src.onboarding.config import OnboardingConfig
from src.onboarding.domain.ai.models import ChatReply, HistoryItem, TranscriptionRequest
from src.onboarding.domain.errors import NotFound, error_text
from src.onboarding.domain.models.onboarding_message import IN_FLIGHT_STATUSES, MessageRole, MessageStatus
from src.onboarding.infra.db.repositories import MessageRepository, SessionRepository, TranscriptionRepository
from src.onboarding.infra.storage.audio import AudioStorageBackend
from src.onboarding.services.ai.gateway import ProviderGateway
from src.onboarding.services.onboarding.conversation import append_message, conversation_history
from src.onboarding.services.tasks.runner import (
    ProcessMessageTask,
    StartConversationTask,
    TaskHandler,
    TranscribeTask,
)

logger = logging.getLogger("tasks")


class _ConversationTaskHandler:
    def __init__(
        self,
        sessions: SessionRepository,
        messages: MessageRepository,
        gateway: ProviderGateway,
        clock: Clock = utcnow,
    ) -> None:
        self._sessions = sessions
        self._messages = messages
        self._gateway = gateway
        self._clock = clock

    def _assistant_turn(self, session_id, prompt: str, history: List[HistoryItem]) -> ChatReply:
        """One gateway call backed by its own assistant message.

        The placeholder moves pending -> processing before the call and ends
        completed with the reply, or failed with the error text.
        """

        placeholder = append_message(
            self._sessions,
            self._messages,
            self._clock,
            session_id=session_id,
            role=MessageRole.ASSISTANT,
            status=MessageStatus.PENDING,
        )
        self._messages.compare_and_transition(placeholder.id, {MessageStatus.PENDING}, MessageStatus.PROCESSING)

        try:
            reply = self._gateway.chat(prompt, session_id, history)
        except Exception as exc:
            self._messages.compare_and_transition(
                placeholder.id,
                {MessageStatus.PROCESSING},
                MessageStatus.FAILED,
                error_message=error_text(exc),
            )
            raise

        self._messages.compare_and_transition(
            placeholder.id,
            {MessageStatus.PROCESSING},
            MessageStatus.COMPLETED,
            content=reply.message,
        )
        return reply

    def _require_session(self, session_id) -> None:
        if self._sessions.get(session_id) is None:
            raise NotFound(f"Session {session_id} not found")


class StartConversationHandler(_ConversationTaskHandler):
    def __init__(
        self,
        sessions: SessionRepository,
        messages: MessageRepository,
        gateway: ProviderGateway,
        config: OnboardingConfig,
        clock: Clock = utcnow,
    ) -> None:
        super().__init__(sessions, messages, gateway, clock)
        self._config = config

    def claim(self, task: StartConversationTask) -> bool:
        return self._sessions.get(task.session_id) is not None

    def attempt(self, task: StartConversationTask, attempt: int) -> None:
        self._require_session(task.session_id)
        self._assistant_turn(task.session_id, self._config.welcome_prompt, [])
        logger.info("Started onboarding session %s via queue", task.session_id)

    def on_failure(self, task: StartConversationTask, error: str) -> None:
        failed = self._messages.fail_in_progress(task.session_id, error)
        logger.error("Failed to start onboarding session %s (%s message(s) failed): %s", task.session_id, failed, error)


class ProcessMessageHandler(_ConversationTaskHandler):
    def claim(self, task: ProcessMessageTask) -> bool:
        return self._messages.compare_and_transition(task.message_id, {MessageStatus.PENDING}, MessageStatus.PROCESSING)

    def attempt(self, task: ProcessMessageTask, attempt: int) -> None:
        self._require_session(task.session_id)
        user_message = self._messages.get(task.message_id)
        if user_message is None:
            raise NotFound(f"Message {task.message_id} not found")

        history = conversation_history(self._messages, task.session_id, before_id=user_message.id)
        reply = self._assistant_turn(task.session_id, user_message.content, history)
        self._messages.compare_and_transition(user_message.id, {MessageStatus.PROCESSING}, MessageStatus.COMPLETED)

        logger.info(
            "Processed onboarding message %s for session %s via queue (is_complete=%s)",
            task.message_id,
            task.session_id,
            reply.is_complete,
        )

    def on_failure(self, task: ProcessMessageTask, error: str) -> None:
        self._messages.compare_and_transition(
            task.message_id,
            IN_FLIGHT_STATUSES,
            MessageStatus.FAILED,
            error_message=error,
        )
        self._messages.fail_in_progress(task.session_id, error)
        logger.error("Failed to process onboarding message %s: %s", task.message_id, error)


class TranscribeHandler:
    """Runs a queued transcription through the provider fallback chain.

    The record stays ``processing`` across retried attempts (the latest error
    is kept on it) and only becomes ``failed`` once retries are exhausted. The
    stored audio is removed as soon as the record is terminal.
    """

    def __init__(
        self,
        transcriptions: TranscriptionRepository,
        gateway: ProviderGateway,
        storage: AudioStorageBackend,
    ) -> None:
        self._transcriptions = transcriptions
        self._gateway = gateway
        self._storage = storage

    def claim(self, task: TranscribeTask) -> bool:
        return self._transcriptions.compare_and_transition(
            task.transcription_id, {MessageStatus.PENDING}, MessageStatus.PROCESSING
        )

    def attempt(self, task: TranscribeTask, attempt: int) -> None:
        record = self._transcriptions.get(task.transcription_id)
        if record is None:
            raise NotFound(f"Transcription {task.transcription_id} not found")
        if not self._storage.exists(record.stored_path):
            raise NotFound(f"Stored audio for transcription {record.id} is missing")

        request = TranscriptionRequest(
            audio=self._storage.read_file(record.stored_path),
            filename=record.original_filename,
            mime_type=record.mime_type,
            language=record.language,
            session_id=record.session_id,
        )
        try:
            result = self._gateway.transcribe_with_fallback(request)
        except Exception as exc:
            self._transcriptions.compare_and_transition(
                record.id,
                {MessageStatus.PROCESSING},
                MessageStatus.PROCESSING,
                error_message=error_text(exc),
            )
            raise

        self._transcriptions.compare_and_transition(
            record.id,
            {MessageStatus.PROCESSING},
            MessageStatus.COMPLETED,
            transcribed_text=result.text,
            provider=result.provider,
            confidence=result.confidence,
            duration=result.duration,
            error_message=None,
        )
        self._storage.delete_file(record.stored_path)
        logger.info(
            "Voice transcription %s completed via queue (provider=%s, text_length=%s)",
            record.id,
            result.provider,
            len(result.text),
        )

    def on_failure(self, task: TranscribeTask, error: str) -> None:
        record = self._transcriptions.get(task.transcription_id)
        self._transcriptions.compare_and_transition(
            task.transcription_id,
            IN_FLIGHT_STATUSES,
            MessageStatus.FAILED,
            error_message=error,
        )
        if record is not None:
            self._storage.delete_file(record.stored_path)
        logger.error("Failed to process voice transcription %s: %s", task.transcription_id, error)


def build_handlers(
    *,
    sessions: SessionRepository,
    messages: MessageRepository,
    transcriptions: TranscriptionRepository,
    gateway: ProviderGateway,
    storage: AudioStorageBackend,
    onboarding_config: OnboardingConfig,
    clock: Clock = utcnow,
) -> Dict[str, TaskHandler]:
    return {
        StartConversationTask.kind: StartConversationHandler(sessions, messages, gateway, onboarding_config, clock),
        ProcessMessageTask.kind: ProcessMessageHandler(sessions, messages, gateway, clock),
        TranscribeTask.kind: TranscribeHandler(transcriptions, gateway, storage),
    }
