from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Protocol
from uuid import UUID

import httpx
from openai import APIConnectionError, APIError, APIStatusError, OpenAI

from src.onboarding.config import AnythingLLMConfig, OpenAIConfig
from src.onboarding.domain.ai.models import HistoryItem
from src.onboarding.domain.errors import ProviderRejected, ProviderUnavailable
from src.onboarding.services.ai import transport

logger = logging.getLogger("providers")

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

SUMMARY_INSTRUCTIONS = (
    "Ниже приведён диалог онбординга. Составь краткое резюме о пользователе "
    "и верни только JSON-объект без пояснений."
)


class ChatClient(Protocol):
    """Protocol for chat/summarization providers.

    ``chat`` returns the raw assistant text; completion-marker handling lives
    in the gateway so every provider behaves the same way.
    """

    name: str

    def chat(self, message: str, session_id: Optional[UUID], history: List[HistoryItem]) -> str:  # pragma: no cover - interface
        raise NotImplementedError

    def summarize(self, messages: List[HistoryItem], session_id: Optional[UUID]) -> Dict[str, Any]:  # pragma: no cover - interface
        raise NotImplementedError


def format_dialogue(messages: List[HistoryItem]) -> str:
    lines = [
        "{}: {}".format("Пользователь" if msg["role"] == "user" else "HOLI", msg["content"])
        for msg in messages
    ]
    return "\n\n".join(lines)


def parse_summary_json(raw: str) -> Dict[str, Any]:
    """Pull the first JSON object out of a model reply.

    Replies that carry no parseable object are kept verbatim with a
    ``parse_error`` flag rather than failing the whole summarization.
    """

    match = _JSON_OBJECT.search(raw)
    if match:
        try:
            decoded = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            logger.warning("Failed to parse JSON from AI response: %s", exc)
        else:
            return decoded if isinstance(decoded, dict) else {}
    return {"raw_response": raw, "parse_error": True}


class AnythingLLMClient:
    """Chat and summarization against AnythingLLM workspaces.

    Conversation history is kept server-side per ``sessionId``, so only the
    latest message is sent.
    """

    name = "anythingllm"

    def __init__(self, config: AnythingLLMConfig, client: Optional[httpx.Client] = None) -> None:
        self._config = config
        self._client = client or httpx.Client()

    def chat(self, message: str, session_id: Optional[UUID], history: List[HistoryItem]) -> str:
        response = self._send(
            workspace=self._config.workspace_slug,
            message=message,
            session_id=session_id,
            timeout=self._config.chat_timeout_seconds,
        )
        return self._extract_message(response)

    def summarize(self, messages: List[HistoryItem], session_id: Optional[UUID]) -> Dict[str, Any]:
        response = self._send(
            workspace=self._config.summary_workspace_slug,
            message=format_dialogue(messages),
            session_id=session_id,
            timeout=self._config.summary_timeout_seconds,
        )
        return parse_summary_json(self._extract_message(response))

    def _send(self, *, workspace: str, message: str, session_id: Optional[UUID], timeout: float) -> Dict[str, Any]:
        return transport.post(
            self._client,
            self.name,
            f"{self._config.api_url}/api/v1/workspace/{workspace}/chat",
            api_key=self._config.api_key,
            timeout=timeout,
            json={
                "message": message,
                "mode": "chat",
                "sessionId": str(session_id) if session_id else "default",
            },
        )

    @staticmethod
    def _extract_message(response: Dict[str, Any]) -> str:
        return response.get("textResponse") or response.get("response") or ""


class OpenAIChatClient:
    """Chat and summarization through the OpenAI Python client.

    The API is stateless, so the full ordered history is sent each turn.
    """

    name = "openai"

    def __init__(
        self,
        config: OpenAIConfig,
        *,
        chat_timeout: float = 60.0,
        summary_timeout: float = 120.0,
        client: Optional[OpenAI] = None,
    ) -> None:
        self._config = config
        self._chat_timeout = chat_timeout
        self._summary_timeout = summary_timeout
        self._client = client or OpenAI(api_key=config.api_key, max_retries=0)

    def chat(self, message: str, session_id: Optional[UUID], history: List[HistoryItem]) -> str:
        messages = [dict(item) for item in history]
        messages.append({"role": "user", "content": message})
        return self._complete(messages, timeout=self._chat_timeout)

    def summarize(self, messages: List[HistoryItem], session_id: Optional[UUID]) -> Dict[str, Any]:
        prompt = f"{SUMMARY_INSTRUCTIONS}\n\n{format_dialogue(messages)}"
        raw = self._complete([{"role": "user", "content": prompt}], timeout=self._summary_timeout)
        return parse_summary_json(raw)

    def _complete(self, messages: List[Dict[str, str]], *, timeout: float) -> str:
        try:
            response = self._client.chat.completions.create(
                model=self._config.chat_model,
                messages=messages,
                timeout=timeout,
            )
        except APIConnectionError as exc:
            # Also covers APITimeoutError.
            logger.error("OpenAI connection error: %s", exc)
            raise ProviderUnavailable("Could not connect to OpenAI", self.name) from exc
        except APIStatusError as exc:
            logger.error("OpenAI API error: status=%s", exc.status_code)
            raise ProviderRejected(f"OpenAI API error: {exc.status_code}", self.name, exc.status_code) from exc
        except APIError as exc:
            # Response validation and other SDK-level failures.
            logger.error("OpenAI error: %s", exc)
            raise ProviderRejected("OpenAI returned an unusable response", self.name) from exc

        if not response.choices:
            raise ProviderRejected("OpenAI returned no choices", self.name)
        return response.choices[0].message.content or ""


class DemoChatClient:
    """Offline chat provider with deterministic replies.

    Useful for local development and tests; it finishes the onboarding after
    ``turns_to_complete`` user turns by emitting the completion marker.
    """

    name = "demo"

    def __init__(self, turns_to_complete: int = 3, completion_marker: str = "[ONBOARDING_COMPLETE]") -> None:
        self._turns_to_complete = turns_to_complete
        self._completion_marker = completion_marker

    def chat(self, message: str, session_id: Optional[UUID], history: List[HistoryItem]) -> str:
        user_turns = sum(1 for item in history if item["role"] == "user")
        if not history:
            return "Привет! Расскажите немного о себе."
        if user_turns + 1 >= self._turns_to_complete:
            return f"Спасибо, этого достаточно! {self._completion_marker}"
        return f"Понял: {message}. Расскажите ещё."

    def summarize(self, messages: List[HistoryItem], session_id: Optional[UUID]) -> Dict[str, Any]:
        answers = [item["content"] for item in messages if item["role"] == "user"]
        return {"answers": answers, "turns": len(messages)}
