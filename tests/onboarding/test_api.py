import json
import logging
from uuid import UUID, uuid4

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from src.onboarding.container import get_container, get_task_queue
from src.onboarding.domain.errors import ProviderUnavailable
from src.onboarding.main import app
from src.onboarding.security import subject_for

from tests.onboarding.fakes import DeferredTasks, ScriptedChatClient, ScriptedVoiceClient, make_container

WEBM = ("note.webm", b"\x1aE\xdf\xa3webm", "audio/webm")


@pytest.fixture
def chat():
    return ScriptedChatClient(replies=["Привет! Как вас зовут?", "Приятно познакомиться! [ONBOARDING_COMPLETE]"])


@pytest.fixture
def container(tmp_path, chat):
    return make_container(tmp_path, chat=chat, voice=[ScriptedVoiceClient("openai", ["привет"])])


@pytest.fixture
def client(container):
    app.dependency_overrides[get_container] = lambda: container
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_root_health_check(client):
    response = client.get("/health")
    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"status": "ok"}


def test_v1_health_check_lists_providers(client):
    response = client.get("/api/v1/health")
    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {
        "status": "ok",
        "version": "v1",
        "chat_provider": "scripted",
        "voice_providers": ["openai"],
    }


def test_validate_user_conflicts_with_active_session(client):
    first = client.post("/api/v1/onboarding/validate-user", json={"user_id": 42})
    assert first.status_code == status.HTTP_200_OK
    assert first.json() == {"user_id": 42, "can_start": True}

    session_id = client.post("/api/v1/onboarding/chat", json={"user_id": 42}).json()["session_id"]

    second = client.post("/api/v1/onboarding/validate-user", json={"user_id": 42})
    assert second.status_code == status.HTTP_409_CONFLICT
    assert second.json()["active_session_id"] == session_id


def test_validate_user_rejects_invalid_id(client):
    response = client.post("/api/v1/onboarding/validate-user", json={"user_id": 0})
    assert response.status_code == 422


def test_sync_chat_complete_and_history(client, chat):
    greeting = client.post("/api/v1/onboarding/chat", json={"user_id": 42})
    assert greeting.status_code == status.HTTP_200_OK
    body = greeting.json()
    assert body["message"] == "Привет! Как вас зовут?"
    assert body["completed"] is False
    session_id = body["session_id"]

    reply = client.post("/api/v1/onboarding/chat", json={"user_id": 42, "message": "Аня"})
    assert reply.json() == {"message": "Приятно познакомиться!", "completed": True, "session_id": session_id}

    completed = client.post("/api/v1/onboarding/complete", json={"user_id": 42, "session_id": session_id})
    assert completed.status_code == status.HTTP_200_OK
    assert completed.json() == {"summary": {"name": "Alice", "goal": "learn"}, "session_id": session_id}

    history = client.get("/api/v1/onboarding/history", params={"user_id": 42}).json()
    assert history["session_id"] == session_id
    assert history["is_completed"] is True
    assert [m["role"] for m in history["messages"]] == ["assistant", "user", "assistant"]

    again = client.post("/api/v1/onboarding/complete", json={"user_id": 42, "session_id": session_id})
    assert again.json()["summary"] == {"name": "Alice", "goal": "learn"}
    assert len(chat.summary_calls) == 1


def test_chat_provider_failure_is_503(tmp_path):
    container = make_container(tmp_path, chat=ScriptedChatClient(replies=[ProviderUnavailable("timeout", "anythingllm")]))
    app.dependency_overrides[get_container] = lambda: container
    try:
        response = TestClient(app).post("/api/v1/onboarding/chat", json={"user_id": 42})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    assert response.json()["detail"] == "Не удалось получить ответ от ассистента. Попробуйте позже."


def test_chat_message_length_is_limited(client):
    response = client.post("/api/v1/onboarding/chat", json={"user_id": 42, "message": "x" * 2001})
    assert response.status_code == 422


def test_complete_unknown_session_is_404(client):
    response = client.post("/api/v1/onboarding/complete", json={"user_id": 42, "session_id": str(uuid4())})
    assert response.status_code == status.HTTP_404_NOT_FOUND
    assert response.json() == {"detail": "Сессия не найдена."}


def test_cancel_active_session(client):
    assert client.post("/api/v1/onboarding/cancel", json={"user_id": 42}).status_code == status.HTTP_404_NOT_FOUND

    session_id = client.post("/api/v1/onboarding/chat", json={"user_id": 42}).json()["session_id"]
    cancelled = client.post("/api/v1/onboarding/cancel", json={"user_id": 42})
    assert cancelled.json() == {"session_id": session_id, "cancelled": True}

    again = client.post("/api/v1/onboarding/cancel", json={"user_id": 42, "session_id": session_id})
    assert again.status_code == status.HTTP_409_CONFLICT

    write = client.post("/api/v1/onboarding/complete", json={"user_id": 42, "session_id": session_id})
    assert write.status_code == status.HTTP_409_CONFLICT


def test_history_without_sessions_is_empty(client):
    response = client.get("/api/v1/onboarding/history", params={"user_id": 42})
    assert response.json() == {"messages": [], "session_id": None, "is_completed": False}


def test_async_chat_is_accepted_and_polled(client):
    accepted = client.post("/api/v1/onboarding/async/chat", json={"user_id": 42})
    assert accepted.status_code == status.HTTP_202_ACCEPTED
    body = accepted.json()
    assert body["status"] == "pending"
    session_id = body["session_id"]

    polled = client.get("/api/v1/onboarding/async/status", params={"user_id": 42, "session_id": session_id})
    assert polled.json() == {
        "session_id": session_id,
        "status": "completed",
        "message": "Привет! Как вас зовут?",
        "error": None,
        "completed": True,
    }

    assert client.post("/api/v1/onboarding/async/chat", json={"user_id": 42, "message": "Аня"}).status_code == 202
    polled = client.get("/api/v1/onboarding/async/status", params={"user_id": 42, "session_id": session_id})
    assert polled.json()["message"] == "Приятно познакомиться!"


def test_async_chat_while_message_is_queued_is_409(tmp_path):
    container = make_container(tmp_path)
    deferred = DeferredTasks(container)
    app.dependency_overrides[get_container] = lambda: container
    app.dependency_overrides[get_task_queue] = lambda: deferred.queue
    try:
        client = TestClient(app)
        first = client.post("/api/v1/onboarding/async/chat", json={"user_id": 42, "message": "hi"})
        second = client.post("/api/v1/onboarding/async/chat", json={"user_id": 42, "message": "hello"})
        polled = client.get(
            "/api/v1/onboarding/async/status",
            params={"user_id": 42, "session_id": first.json()["session_id"]},
        )
    finally:
        app.dependency_overrides.clear()

    assert first.status_code == status.HTTP_202_ACCEPTED
    assert second.status_code == status.HTTP_409_CONFLICT
    assert second.json() == {"detail": "Предыдущее сообщение ещё обрабатывается."}
    assert polled.json()["status"] == "pending"
    assert polled.json()["completed"] is False
    assert deferred.pending == 1


def test_async_status_for_another_user_is_404(client):
    session_id = client.post("/api/v1/onboarding/async/chat", json={"user_id": 42}).json()["session_id"]

    response = client.get("/api/v1/onboarding/async/status", params={"user_id": 7, "session_id": session_id})
    assert response.status_code == status.HTTP_404_NOT_FOUND


def test_voice_transcribe(client):
    response = client.post("/api/v1/voice/transcribe", files={"audio": WEBM}, data={"user_id": "42"})
    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {
        "text": "привет",
        "provider": "openai",
        "language": "ru",
        "confidence": 0.9,
        "duration": 1.5,
    }


def test_voice_transcribe_empty_result_has_advisory_message(tmp_path):
    container = make_container(tmp_path, voice=[ScriptedVoiceClient("openai", [" "])])
    app.dependency_overrides[get_container] = lambda: container
    try:
        response = TestClient(app).post("/api/v1/voice/transcribe", files={"audio": WEBM}, data={"user_id": "42"})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {
        "text": "",
        "provider": "openai",
        "message": "Не удалось распознать речь. Попробуйте ещё раз.",
    }


def test_voice_transcribe_rejects_unsupported_format(client):
    response = client.post(
        "/api/v1/voice/transcribe",
        files={"audio": ("note.aac", b"aac", "audio/aac")},
        data={"user_id": "42"},
    )
    assert response.status_code == 422
    assert "audio/aac" in response.json()["detail"]


def test_voice_transcribe_provider_failure_is_503(tmp_path):
    container = make_container(tmp_path, voice=[ScriptedVoiceClient("openai", [ProviderUnavailable("timeout", "openai")])])
    app.dependency_overrides[get_container] = lambda: container
    try:
        response = TestClient(app).post("/api/v1/voice/transcribe", files={"audio": WEBM}, data={"user_id": "42"})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    assert response.json() == {"detail": "timeout"}


def test_voice_status(client):
    response = client.get("/api/v1/voice/status")
    assert response.json() == {"available": True, "providers": ["openai"]}


def test_async_transcription_and_poll(client):
    accepted = client.post(
        "/api/v1/voice/transcribe/async",
        files={"audio": WEBM},
        data={"user_id": "42", "language": "ru"},
    )
    assert accepted.status_code == status.HTTP_202_ACCEPTED
    transcription_id = accepted.json()["transcription_id"]
    assert UUID(transcription_id)
    assert accepted.json()["status"] == "pending"

    polled = client.get(f"/api/v1/voice/transcriptions/{transcription_id}", params={"user_id": 42})
    assert polled.status_code == status.HTTP_200_OK
    assert polled.json() == {
        "transcription_id": transcription_id,
        "status": "completed",
        "completed": True,
        "text": "привет",
        "provider": "openai",
        "confidence": 0.9,
        "duration": 1.5,
    }

    other = client.get(f"/api/v1/voice/transcriptions/{transcription_id}", params={"user_id": 7})
    assert other.status_code == status.HTTP_404_NOT_FOUND


def test_async_transcription_while_one_is_queued_is_409(tmp_path):
    container = make_container(tmp_path)
    deferred = DeferredTasks(container)
    app.dependency_overrides[get_container] = lambda: container
    app.dependency_overrides[get_task_queue] = lambda: deferred.queue
    try:
        client = TestClient(app)
        first = client.post("/api/v1/voice/transcribe/async", files={"audio": WEBM}, data={"user_id": "42"})
        second = client.post("/api/v1/voice/transcribe/async", files={"audio": WEBM}, data={"user_id": "42"})
        polled = client.get(f"/api/v1/voice/transcriptions/{first.json()['transcription_id']}", params={"user_id": 42})
    finally:
        app.dependency_overrides.clear()

    assert first.status_code == status.HTTP_202_ACCEPTED
    assert second.status_code == status.HTTP_409_CONFLICT
    assert polled.json() == {
        "transcription_id": first.json()["transcription_id"],
        "status": "pending",
        "completed": False,
    }
    assert deferred.pending == 1


def test_summaries_are_paginated(client):
    session_ids = []
    for user_id in (1, 2):
        session_id = client.post("/api/v1/onboarding/chat", json={"user_id": user_id}).json()["session_id"]
        client.post("/api/v1/onboarding/complete", json={"user_id": user_id, "session_id": session_id})
        session_ids.append(session_id)
    client.post("/api/v1/onboarding/chat", json={"user_id": 3})

    listing = client.get("/api/v1/summaries", params={"per_page": 1})
    assert listing.status_code == status.HTTP_200_OK
    body = listing.json()
    assert body["meta"] == {"current_page": 1, "last_page": 2, "per_page": 1, "total": 2}
    assert len(body["data"]) == 1

    mine = client.get("/api/v1/summaries", params={"user_id": 1}).json()
    assert [item["id"] for item in mine["data"]] == [session_ids[0]]
    assert mine["data"][0]["user_id"] == 1
    assert mine["data"][0]["summary"] == {"name": "Alice", "goal": "learn"}

    single = client.get(f"/api/v1/summaries/{session_ids[1]}")
    assert single.json()["id"] == session_ids[1]
    assert client.get(f"/api/v1/summaries/{uuid4()}").status_code == status.HTTP_404_NOT_FOUND


@pytest.fixture
def secured_client(tmp_path):
    container = make_container(tmp_path, api_auth_enabled=True, api_keys="team-key, ops-key")
    app.dependency_overrides[get_container] = lambda: container
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_api_key_is_required_when_auth_is_enabled(secured_client):
    missing = secured_client.get("/api/v1/onboarding/history", params={"user_id": 42})
    wrong = secured_client.get("/api/v1/onboarding/history", params={"user_id": 42}, headers={"X-API-Key": "nope"})
    valid = secured_client.get("/api/v1/onboarding/history", params={"user_id": 42}, headers={"X-API-Key": "ops-key"})

    assert missing.status_code == status.HTTP_401_UNAUTHORIZED
    assert wrong.status_code == status.HTTP_401_UNAUTHORIZED
    assert wrong.headers["WWW-Authenticate"] == "ApiKey"
    assert valid.status_code == status.HTTP_200_OK
    # The v1 health endpoint stays open.
    assert secured_client.get("/api/v1/health").status_code == status.HTTP_200_OK


def test_auth_enabled_without_keys_rejects_everyone(tmp_path):
    container = make_container(tmp_path, api_auth_enabled=True, api_keys="")
    app.dependency_overrides[get_container] = lambda: container
    try:
        response = TestClient(app).get(
            "/api/v1/onboarding/history", params={"user_id": 42}, headers={"X-API-Key": "anything"}
        )
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == status.HTTP_401_UNAUTHORIZED


def test_audit_events_carry_hashed_caller(secured_client, caplog):
    caplog.set_level(logging.INFO, logger="audit")

    response = secured_client.post("/api/v1/onboarding/chat", json={"user_id": 42}, headers={"X-API-Key": "team-key"})

    assert response.status_code == status.HTTP_200_OK
    events = [json.loads(record.getMessage()) for record in caplog.records if record.name == "audit"]
    assert [event["action"] for event in events] == ["start_onboarding"]
    assert events[0]["subject"] == subject_for("team-key")
    assert "team-key" not in caplog.text


def test_audit_subject_is_empty_without_auth(client, caplog):
    caplog.set_level(logging.INFO, logger="audit")

    client.post("/api/v1/onboarding/chat", json={"user_id": 42})

    events = [json.loads(record.getMessage()) for record in caplog.records if record.name == "audit"]
    assert events and events[0]["subject"] is None
