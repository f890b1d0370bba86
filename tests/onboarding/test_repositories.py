import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from uuid import uuid4

import pytest

from src.onboarding.config import OnboardingConfig
from src.onboarding.domain.errors import DuplicateActiveSession
from src.onboarding.domain.models.onboarding_message import MessageRole, MessageStatus, OnboardingMessage
from src.onboarding.domain.models.onboarding_session import OnboardingSession, OnboardingStatus
from src.onboarding.domain.models.voice_transcription import VoiceTranscription
from src.onboarding.infra.db.bootstrap import init_in_memory_repositories, init_sql_repositories
from src.onboarding.services.ai.gateway import ProviderGateway
from src.onboarding.services.onboarding.service import OnboardingService

from tests.onboarding.fakes import FakeClock, ScriptedChatClient


@pytest.fixture(params=["memory", "sql"])
def clock_and_repos(request, tmp_path):
    clock = FakeClock()
    if request.param == "memory":
        repos = init_in_memory_repositories(clock)
    else:
        repos = init_sql_repositories(f"sqlite:///{tmp_path / 'onboarding.db'}", clock)
    return clock, repos


def _session(clock, owner_id=42, **fields):
    now = clock()
    return OnboardingSession(id=uuid4(), owner_id=owner_id, created_at=now, updated_at=now, **fields)


def _message(clock, session_id, role=MessageRole.USER, content="hi", status=MessageStatus.COMPLETED):
    return OnboardingMessage(session_id=session_id, role=role, content=content, status=status, created_at=clock())


def _transcription(clock, owner_id=42, session_id=None):
    now = clock()
    return VoiceTranscription(
        id=uuid4(),
        owner_id=owner_id,
        session_id=session_id,
        language="ru",
        original_filename="note.webm",
        stored_path="abc.webm",
        mime_type="audio/webm",
        file_size=10,
        created_at=now,
        updated_at=now,
    )


def test_session_compare_and_transition_only_from_expected_status(clock_and_repos):
    clock, repos = clock_and_repos
    session = repos.sessions.create(_session(clock))

    clock.advance(minutes=5)
    assert repos.sessions.compare_and_transition(
        session.id,
        {OnboardingStatus.IN_PROGRESS},
        OnboardingStatus.COMPLETED,
        summary={"name": "Alice"},
        completed_at=clock(),
    )

    stored = repos.sessions.get(session.id)
    assert stored.status == OnboardingStatus.COMPLETED
    assert stored.summary == {"name": "Alice"}
    assert stored.updated_at == clock()

    # Terminal sessions never move again.
    assert not repos.sessions.compare_and_transition(
        session.id, {OnboardingStatus.IN_PROGRESS}, OnboardingStatus.EXPIRED
    )
    assert repos.sessions.get(session.id).status == OnboardingStatus.COMPLETED


def test_second_active_session_for_owner_is_rejected(clock_and_repos):
    clock, repos = clock_and_repos
    first = repos.sessions.create(_session(clock))

    with pytest.raises(DuplicateActiveSession):
        repos.sessions.create(_session(clock))

    repos.sessions.compare_and_transition(first.id, {OnboardingStatus.IN_PROGRESS}, OnboardingStatus.CANCELLED)
    second = repos.sessions.create(_session(clock))

    assert repos.sessions.find_active_by_owner(42).id == second.id
    # Another owner is unaffected.
    repos.sessions.create(_session(clock, owner_id=7))


def test_list_stale_uses_last_activity(clock_and_repos):
    clock, repos = clock_and_repos
    idle = repos.sessions.create(_session(clock))
    busy = repos.sessions.create(_session(clock, owner_id=7))

    clock.advance(hours=20)
    repos.sessions.compare_and_transition(busy.id, {OnboardingStatus.IN_PROGRESS}, OnboardingStatus.IN_PROGRESS)
    clock.advance(hours=5)

    stale = repos.sessions.list_stale(clock() - timedelta(hours=24))
    assert [s.id for s in stale] == [idle.id]
    assert repos.sessions.list_stale(clock() - timedelta(hours=24), owner_id=7) == []


def test_completed_listing_is_newest_first_and_requires_summary(clock_and_repos):
    clock, repos = clock_and_repos
    ids = []
    for owner_id in (1, 2, 3):
        session = repos.sessions.create(_session(clock, owner_id=owner_id))
        clock.advance(minutes=1)
        repos.sessions.compare_and_transition(
            session.id,
            {OnboardingStatus.IN_PROGRESS},
            OnboardingStatus.COMPLETED,
            summary={"owner": owner_id},
            completed_at=clock(),
        )
        ids.append(session.id)
    no_summary = repos.sessions.create(_session(clock, owner_id=4))
    repos.sessions.compare_and_transition(no_summary.id, {OnboardingStatus.IN_PROGRESS}, OnboardingStatus.COMPLETED)

    assert repos.sessions.count_completed() == 3
    assert [s.id for s in repos.sessions.list_completed(limit=2)] == [ids[2], ids[1]]
    assert [s.id for s in repos.sessions.list_completed(offset=2, limit=2)] == [ids[0]]
    assert [s.id for s in repos.sessions.list_completed(owner_id=2)] == [ids[1]]


def test_messages_keep_creation_order_and_fail_in_progress(clock_and_repos):
    clock, repos = clock_and_repos
    session = repos.sessions.create(_session(clock))

    greeting = repos.messages.create(_message(clock, session.id, MessageRole.ASSISTANT, "hello"))
    question = repos.messages.create(_message(clock, session.id, content="who?", status=MessageStatus.PENDING))
    placeholder = repos.messages.create(
        _message(clock, session.id, MessageRole.ASSISTANT, "", status=MessageStatus.PROCESSING)
    )

    assert greeting.id < question.id < placeholder.id
    assert [m.id for m in repos.messages.list_for_session(session.id)] == [greeting.id, question.id, placeholder.id]
    assert repos.messages.latest_assistant(session.id).id == placeholder.id
    assert repos.messages.has_in_progress(session.id)

    assert repos.messages.fail_in_progress(session.id, "provider down") == 2
    assert not repos.messages.has_in_progress(session.id)
    failed = repos.messages.get(question.id)
    assert failed.status == MessageStatus.FAILED
    assert failed.error_message == "provider down"
    assert repos.messages.get(greeting.id).status == MessageStatus.COMPLETED


def test_message_compare_and_transition_is_one_shot(clock_and_repos):
    clock, repos = clock_and_repos
    session = repos.sessions.create(_session(clock))
    message = repos.messages.create(_message(clock, session.id, status=MessageStatus.PENDING))

    assert repos.messages.compare_and_transition(message.id, {MessageStatus.PENDING}, MessageStatus.PROCESSING)
    assert not repos.messages.compare_and_transition(message.id, {MessageStatus.PENDING}, MessageStatus.PROCESSING)
    assert repos.messages.compare_and_transition(
        message.id, {MessageStatus.PROCESSING}, MessageStatus.FAILED, error_message="boom"
    )
    assert not repos.messages.compare_and_transition(
        message.id, {MessageStatus.PENDING, MessageStatus.PROCESSING}, MessageStatus.COMPLETED
    )
    assert repos.messages.get(message.id).status == MessageStatus.FAILED


def test_transcription_guard_scoped_by_owner_and_session(clock_and_repos):
    clock, repos = clock_and_repos
    session_id = uuid4()
    transcription = repos.transcriptions.create(_transcription(clock, session_id=session_id))

    assert repos.transcriptions.has_in_progress(42)
    assert repos.transcriptions.has_in_progress(42, session_id)
    assert not repos.transcriptions.has_in_progress(42, uuid4())
    assert not repos.transcriptions.has_in_progress(7)
    assert repos.transcriptions.get_for_owner(transcription.id, 7) is None

    clock.advance(seconds=30)
    assert repos.transcriptions.compare_and_transition(
        transcription.id, {MessageStatus.PENDING}, MessageStatus.PROCESSING
    )
    assert repos.transcriptions.compare_and_transition(
        transcription.id,
        {MessageStatus.PROCESSING},
        MessageStatus.COMPLETED,
        transcribed_text="привет",
        provider="openai",
        confidence=0.87,
    )

    stored = repos.transcriptions.get_for_owner(transcription.id, 42)
    assert stored.status == MessageStatus.COMPLETED
    assert stored.transcribed_text == "привет"
    assert stored.confidence == pytest.approx(0.87)
    assert stored.updated_at == clock()
    assert not repos.transcriptions.has_in_progress(42)


def _race(count, fn):
    """Run ``fn(index)`` on ``count`` threads released together; return results or raised errors."""

    barrier = threading.Barrier(count)

    def contender(index):
        barrier.wait(timeout=5)
        try:
            return fn(index)
        except Exception as exc:
            return exc

    with ThreadPoolExecutor(max_workers=count) as pool:
        return list(pool.map(contender, range(count)))


def test_concurrent_message_claims_have_one_winner(clock_and_repos):
    clock, repos = clock_and_repos
    session = repos.sessions.create(_session(clock))
    message = repos.messages.create(_message(clock, session.id, status=MessageStatus.PENDING))

    results = _race(
        8,
        lambda _: repos.messages.compare_and_transition(message.id, {MessageStatus.PENDING}, MessageStatus.PROCESSING),
    )

    assert results.count(True) == 1
    assert results.count(False) == 7
    assert repos.messages.get(message.id).status == MessageStatus.PROCESSING


def test_concurrent_session_inserts_keep_one_active_per_owner(clock_and_repos):
    clock, repos = clock_and_repos

    results = _race(8, lambda _: repos.sessions.create(_session(clock)))

    created = [r for r in results if isinstance(r, OnboardingSession)]
    rejected = [r for r in results if isinstance(r, DuplicateActiveSession)]
    assert len(created) == 1
    assert len(rejected) == 7
    assert repos.sessions.find_active_by_owner(42).id == created[0].id


def test_concurrent_terminal_transitions_have_one_winner(clock_and_repos):
    clock, repos = clock_and_repos
    session = repos.sessions.create(_session(clock))
    targets = [OnboardingStatus.COMPLETED, OnboardingStatus.CANCELLED, OnboardingStatus.EXPIRED] * 2

    results = _race(
        len(targets),
        lambda index: repos.sessions.compare_and_transition(
            session.id, {OnboardingStatus.IN_PROGRESS}, targets[index]
        ),
    )

    assert results.count(True) == 1
    winner = targets[results.index(True)]
    assert repos.sessions.get(session.id).status == winner


def test_services_sharing_a_store_resume_one_session(clock_and_repos):
    clock, repos = clock_and_repos
    # Separate service instances stand in for separate processes: no shared owner lock.
    gateway = ProviderGateway(ScriptedChatClient(), [])
    services = [
        OnboardingService(repos.sessions, repos.messages, gateway, OnboardingConfig(), clock) for _ in range(6)
    ]

    results = _race(len(services), lambda index: services[index].get_or_create_session(42))

    assert all(isinstance(r, OnboardingSession) for r in results)
    assert len({r.id for r in results}) == 1
    assert repos.sessions.find_active_by_owner(42).id == results[0].id
