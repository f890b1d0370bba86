from __future__ import annotations

import logging
import math
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Iterator, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel

from src.onboarding.clock import Clock, utcnow
from src.onboarding.config import OnboardingConfig
from src.onboarding.domain.ai.models import ChatReply, HistoryItem
from src.onboarding.domain.errors import (
    AlreadyInProgress,
    DuplicateActiveSession,
    NotFound,
    SessionNotActive,
    error_text,
)
from src.onboarding.domain.models.onboarding_message import MessageRole, MessageStatus, OnboardingMessage
from src.onboarding.domain.models.onboarding_session import OnboardingSession, OnboardingStatus
from src.onboarding.infra.db.repositories import MessageRepository, SessionRepository
from src.onboarding.services.ai.gateway import ProviderGateway
from src.onboarding.services.onboarding.conversation import append_message, conversation_history
from src.onboarding.services.tasks.queue import TaskQueue
from src.onboarding.services.tasks.runner import ProcessMessageTask, StartConversationTask

logger = logging.getLogger("onboarding")

ACTIVE_SESSION_EXISTS = "У вас уже есть активная сессия онбординга."
MESSAGE_IN_PROGRESS = "Предыдущее сообщение ещё обрабатывается."


@dataclass(frozen=True)
class StartCheck:
    can_start: bool
    reason: Optional[str] = None
    active_session_id: Optional[UUID] = None


@dataclass(frozen=True)
class MessageStatusView:
    """Poll view of the latest assistant turn.

    ``message`` is only set once the turn completed and ``error`` only once it
    failed.
    """

    status: MessageStatus
    message: Optional[str] = None
    error: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.status == MessageStatus.COMPLETED


@dataclass
class _OwnerLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class SummaryPage(BaseModel):
    items: List[OnboardingSession]
    page: int
    per_page: int
    total: int

    @property
    def last_page(self) -> int:
        return max(1, math.ceil(self.total / self.per_page))


class OnboardingService:
    """Drives onboarding sessions from creation to a terminal status.

    Every status change goes through the repositories' compare-and-transition
    so concurrent requests, queue workers and the stale reaper never move an
    entity out of a terminal status.
    """

    def __init__(
        self,
        sessions: SessionRepository,
        messages: MessageRepository,
        gateway: ProviderGateway,
        config: OnboardingConfig,
        clock: Clock = utcnow,
    ) -> None:
        self._sessions = sessions
        self._messages = messages
        self._gateway = gateway
        self._config = config
        self._clock = clock
        self._owner_locks: Dict[int, _OwnerLock] = {}
        self._owner_locks_guard = threading.Lock()

    @property
    def config(self) -> OnboardingConfig:
        return self._config

    # Sessions

    def get_or_create_session(self, owner_id: int) -> OnboardingSession:
        """Return the owner's in-progress session, creating one if needed.

        Stale sessions are expired first, so an idle session is never resumed.
        """

        with self._owner_lock(owner_id):
            self.expire_stale_sessions(owner_id)

            existing = self._sessions.find_active_by_owner(owner_id)
            if existing is not None:
                return existing

            now = self._clock()
            try:
                session = self._sessions.create(
                    OnboardingSession(id=uuid4(), owner_id=owner_id, created_at=now, updated_at=now)
                )
            except DuplicateActiveSession:
                # Another process created it between our read and insert.
                existing = self._sessions.find_active_by_owner(owner_id)
                if existing is None:
                    raise
                return existing

        logger.info("Created onboarding session %s for owner %s", session.id, owner_id)
        return session

    def can_start_onboarding(self, owner_id: int) -> StartCheck:
        self.expire_stale_sessions(owner_id)

        active = self._sessions.find_active_by_owner(owner_id)
        if active is not None:
            return StartCheck(can_start=False, reason=ACTIVE_SESSION_EXISTS, active_session_id=active.id)
        return StartCheck(can_start=True)

    def get_active_session(self, owner_id: int) -> Optional[OnboardingSession]:
        return self._sessions.find_active_by_owner(owner_id)

    def get_latest_session(self, owner_id: int) -> Optional[OnboardingSession]:
        return self._sessions.latest_for_owner(owner_id)

    def find_session(self, session_id: UUID, owner_id: int) -> OnboardingSession:
        session = self._sessions.get(session_id)
        if session is None or session.owner_id != owner_id:
            raise NotFound("Сессия не найдена.")
        return session

    # Synchronous conversation

    def start_conversation(self, session: OnboardingSession) -> ChatReply:
        """Ask the provider for the greeting and store it as the first assistant turn."""

        current = self._require_active(session.id)
        reply = self._gateway.chat(self._config.welcome_prompt, current.id, [])
        self._append(current.id, MessageRole.ASSISTANT, reply.message)

        logger.info("Started onboarding session %s", current.id)
        return reply

    def process_user_message(self, session: OnboardingSession, text: str) -> ChatReply:
        """Send one user turn and store the reply.

        On any error the user message is kept as ``failed`` with the error
        text, no assistant turn is stored and the error propagates.
        """

        current = self._require_active(session.id)
        history = conversation_history(self._messages, current.id)

        user_message = self._append(current.id, MessageRole.USER, text, MessageStatus.PENDING)
        self._messages.compare_and_transition(user_message.id, {MessageStatus.PENDING}, MessageStatus.PROCESSING)

        try:
            reply = self._gateway.chat(text, current.id, history)
            self._append(current.id, MessageRole.ASSISTANT, reply.message)
        except Exception as exc:
            error = error_text(exc)
            self._messages.compare_and_transition(
                user_message.id,
                {MessageStatus.PROCESSING},
                MessageStatus.FAILED,
                error_message=error,
            )
            logger.warning("Onboarding message %s failed: %s", user_message.id, error)
            raise

        self._messages.compare_and_transition(user_message.id, {MessageStatus.PROCESSING}, MessageStatus.COMPLETED)

        logger.info("Processed onboarding message for session %s (is_complete=%s)", current.id, reply.is_complete)
        return reply

    def complete_conversation(self, session: OnboardingSession) -> Dict[str, Any]:
        """Summarize the conversation and close the session.

        Idempotent: an already completed session returns its stored summary
        without calling the provider again.
        """

        current = self._get(session.id)
        if current.is_completed:
            return current.summary or {}
        if current.status.is_terminal:
            raise SessionNotActive("Сессия уже завершена.")

        summary = self._gateway.summarize(conversation_history(self._messages, current.id), current.id)

        if self._sessions.compare_and_transition(
            current.id,
            {OnboardingStatus.IN_PROGRESS},
            OnboardingStatus.COMPLETED,
            summary=summary,
            completed_at=self._clock(),
        ):
            logger.info("Completed onboarding session %s", current.id)
            return summary

        # Lost a race against another completion, a cancel or the reaper.
        latest = self._get(current.id)
        if latest.is_completed:
            return latest.summary or {}
        raise SessionNotActive("Сессия уже завершена.")

    def cancel_conversation(self, session: OnboardingSession) -> bool:
        """Cancel an active session. Returns False when it was not active."""

        cancelled = self._sessions.compare_and_transition(
            session.id, {OnboardingStatus.IN_PROGRESS}, OnboardingStatus.CANCELLED
        )
        if cancelled:
            logger.info("Cancelled onboarding session %s", session.id)
        return cancelled

    # Stale sessions

    def expire_stale_sessions(self, owner_id: int, threshold_hours: Optional[float] = None) -> int:
        return self._expire_stale(owner_id, threshold_hours)

    def expire_all_stale_sessions(self) -> int:
        return self._expire_stale(None, None)

    def _expire_stale(self, owner_id: Optional[int], threshold_hours: Optional[float]) -> int:
        hours = self._config.session_expiry_hours if threshold_hours is None else threshold_hours
        cutoff = self._clock() - timedelta(hours=hours)

        expired = 0
        for stale in self._sessions.list_stale(cutoff, owner_id=owner_id):
            if self._sessions.compare_and_transition(stale.id, {OnboardingStatus.IN_PROGRESS}, OnboardingStatus.EXPIRED):
                expired += 1
                logger.info("Expired stale onboarding session %s", stale.id)
        return expired

    # Messages

    def get_conversation_history(self, session: OnboardingSession) -> List[HistoryItem]:
        return conversation_history(self._messages, session.id)

    def get_message_status(self, session: OnboardingSession) -> MessageStatusView:
        latest = self._messages.latest_assistant(session.id)
        if latest is None:
            return MessageStatusView(status=MessageStatus.PENDING)

        return MessageStatusView(
            status=latest.status,
            message=latest.content if latest.status == MessageStatus.COMPLETED else None,
            error=latest.error_message if latest.status == MessageStatus.FAILED else None,
        )

    def has_processing_messages(self, session: OnboardingSession) -> bool:
        return self._messages.has_in_progress(session.id)

    # Queued conversation

    def start_conversation_async(self, session: OnboardingSession, task_queue: TaskQueue) -> str:
        """Queue the greeting on ``task_queue``. Returns the task id."""

        current = self._require_active(session.id)
        if self.has_processing_messages(current):
            raise AlreadyInProgress(MESSAGE_IN_PROGRESS)

        task_id = task_queue.enqueue(StartConversationTask(session_id=current.id))
        logger.info("Queued onboarding start for session %s (task %s)", current.id, task_id)
        return task_id

    def process_message_async(self, session: OnboardingSession, text: str, task_queue: TaskQueue) -> OnboardingMessage:
        """Store the user turn as ``pending`` and queue its processing.

        The pending user message is what the guard sees, so a second request
        for the same session is rejected until this one reaches a terminal
        status.
        """

        current = self._require_active(session.id)
        with self._owner_lock(current.owner_id):
            if self.has_processing_messages(current):
                raise AlreadyInProgress(MESSAGE_IN_PROGRESS)
            user_message = self._append(current.id, MessageRole.USER, text, MessageStatus.PENDING)

        task_id = task_queue.enqueue(ProcessMessageTask(message_id=user_message.id, session_id=current.id))
        logger.info(
            "Queued onboarding message %s for session %s (task %s)",
            user_message.id,
            current.id,
            task_id,
        )
        return user_message

    # Summaries

    def list_summaries(self, owner_id: Optional[int] = None, page: int = 1, per_page: int = 15) -> SummaryPage:
        page = max(page, 1)
        items = self._sessions.list_completed(owner_id=owner_id, offset=(page - 1) * per_page, limit=per_page)
        total = self._sessions.count_completed(owner_id=owner_id)
        return SummaryPage(items=items, page=page, per_page=per_page, total=total)

    def get_summary(self, session_id: UUID) -> OnboardingSession:
        session = self._sessions.get(session_id)
        if session is None or not session.is_completed:
            raise NotFound("Суммаризация не найдена.")
        return session

    # Helpers

    def _get(self, session_id: UUID) -> OnboardingSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFound("Сессия не найдена.")
        return session

    def _require_active(self, session_id: UUID) -> OnboardingSession:
        session = self._get(session_id)
        if not session.is_active:
            raise SessionNotActive("Сессия уже завершена.")
        return session

    def _append(
        self,
        session_id: UUID,
        role: MessageRole,
        content: str,
        status: MessageStatus = MessageStatus.COMPLETED,
    ) -> OnboardingMessage:
        return append_message(
            self._sessions,
            self._messages,
            self._clock,
            session_id=session_id,
            role=role,
            content=content,
            status=status,
        )

    @contextmanager
    def _owner_lock(self, owner_id: int) -> Iterator[None]:
        """Serialize one owner's check-then-insert steps.

        Entries are dropped once no caller holds or waits on them.
        """

        with self._owner_locks_guard:
            entry = self._owner_locks.get(owner_id)
            if entry is None:
                entry = self._owner_locks[owner_id] = _OwnerLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._owner_locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._owner_locks[owner_id]
