from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence
from uuid import UUID

from src.onboarding.config import AnythingLLMConfig, OpenAIConfig, Settings, VoiceConfig
from src.onboarding.domain.ai.models import ChatReply, HistoryItem, TranscriptionRequest, TranscriptionResult
from src.onboarding.domain.errors import OnboardingError, ProviderRejected, ProviderUnavailable, UnsupportedInput
from src.onboarding.services.ai.backends import AnythingLLMClient, ChatClient, DemoChatClient, OpenAIChatClient
from src.onboarding.services.voice.backends import (
    AnythingLLMVoiceClient,
    DemoVoiceClient,
    OpenAIVoiceClient,
    VoiceClient,
    validate_audio,
)

logger = logging.getLogger("providers")

COMPLETION_MARKER = "[ONBOARDING_COMPLETE]"


def split_completion_marker(text: str) -> ChatReply:
    """Strip the end-of-onboarding sentinel and report whether it was present."""

    is_complete = COMPLETION_MARKER in text
    return ChatReply(message=text.replace(COMPLETION_MARKER, "").strip(), is_complete=is_complete)


class ProviderGateway:
    """Single entry point for every outbound AI call.

    Chat and summarization go to one configured provider; transcription walks
    an ordered chain of voice providers.
    """

    def __init__(self, chat_client: ChatClient, voice_clients: Sequence[VoiceClient]) -> None:
        self._chat_client = chat_client
        self._voice_clients: List[VoiceClient] = list(voice_clients)

    @property
    def chat_provider(self) -> str:
        return self._chat_client.name

    @property
    def voice_providers(self) -> List[str]:
        return [client.name for client in self._voice_clients]

    def chat(self, message: str, session_id: Optional[UUID], history: Optional[List[HistoryItem]] = None) -> ChatReply:
        with self._translate_errors(self._chat_client.name):
            raw = self._chat_client.chat(message, session_id, list(history or []))
        return split_completion_marker(raw)

    def summarize(self, messages: List[HistoryItem], session_id: Optional[UUID]) -> Dict[str, Any]:
        with self._translate_errors(self._chat_client.name):
            return self._chat_client.summarize(messages, session_id)

    @staticmethod
    @contextmanager
    def _translate_errors(provider: str) -> Iterator[None]:
        """Re-raise anything outside the error taxonomy as ProviderRejected."""

        try:
            yield
        except OnboardingError:
            raise
        except Exception as exc:
            logger.exception("Provider %s crashed", provider)
            raise ProviderRejected(str(exc) or exc.__class__.__name__, provider) from exc

    def validate_audio(self, mime_type: str, size: int) -> None:
        """Raise UnsupportedInput unless at least one enabled provider accepts the audio."""

        if not self._voice_clients:
            raise ProviderUnavailable("No transcription provider is enabled")
        last_error: Optional[UnsupportedInput] = None
        for client in self._voice_clients:
            try:
                validate_audio(client, mime_type, size)
                return
            except UnsupportedInput as exc:
                last_error = exc
        assert last_error is not None
        raise last_error

    def transcribe(self, request: TranscriptionRequest, provider: Optional[str] = None) -> TranscriptionResult:
        """Transcribe with a single provider (the primary unless ``provider`` is given)."""

        return self._voice_client(provider).transcribe(request)

    def transcribe_with_fallback(self, request: TranscriptionRequest) -> TranscriptionResult:
        """Try each enabled provider in order until one succeeds.

        Only when every provider fails is the last provider's error raised.
        """

        if not self._voice_clients:
            raise ProviderUnavailable("No transcription provider is enabled")

        last_error: Optional[OnboardingError] = None
        for client in self._voice_clients:
            try:
                result = client.transcribe(request)
            except OnboardingError as exc:
                logger.warning("Transcription provider %s failed: %s", client.name, exc)
                last_error = exc
                continue
            except Exception as exc:
                logger.exception("Transcription provider %s crashed", client.name)
                last_error = ProviderRejected(str(exc) or exc.__class__.__name__, client.name)
                continue
            if last_error is not None:
                logger.info("Transcription served by fallback provider %s", client.name)
            return result

        assert last_error is not None
        raise last_error

    def is_voice_available(self) -> bool:
        return any(client.is_available() for client in self._voice_clients)

    def _voice_client(self, provider: Optional[str]) -> VoiceClient:
        if not self._voice_clients:
            raise ProviderUnavailable("No transcription provider is enabled")
        if provider is None:
            return self._voice_clients[0]
        for client in self._voice_clients:
            if client.name == provider:
                return client
        raise ProviderUnavailable(f"Провайдер {provider} недоступен", provider)


CHAT_CLIENT_FACTORIES: Dict[str, Callable[[Settings], ChatClient]] = {
    "anythingllm": lambda s: AnythingLLMClient(AnythingLLMConfig.from_settings(s)),
    "openai": lambda s: OpenAIChatClient(
        OpenAIConfig.from_settings(s),
        chat_timeout=s.ai_chat_timeout,
        summary_timeout=s.ai_summary_timeout,
    ),
    "demo": lambda s: DemoChatClient(),
}

VOICE_CLIENT_FACTORIES: Dict[str, Callable[[Settings, VoiceConfig], VoiceClient]] = {
    "openai": lambda s, v: OpenAIVoiceClient(
        OpenAIConfig.from_settings(s), timeout=v.timeout_seconds, max_file_size=v.max_file_size
    ),
    "anythingllm": lambda s, v: AnythingLLMVoiceClient(
        AnythingLLMConfig.from_settings(s), timeout=v.timeout_seconds, max_file_size=v.max_file_size
    ),
    "demo": lambda s, v: DemoVoiceClient(max_file_size=v.max_file_size),
}


def build_gateway(source: Settings) -> ProviderGateway:
    """Build a gateway from configuration.

    - AI_PROVIDER picks the chat/summarization provider.
    - VOICE_PROVIDERS is the ordered fallback chain; providers without
      credentials are left out of the chain.
    """

    chat_name = source.ai_provider.lower()
    if chat_name not in CHAT_CLIENT_FACTORIES:
        raise ValueError(f"Unknown AI_PROVIDER '{source.ai_provider}'")
    chat_client = CHAT_CLIENT_FACTORIES[chat_name](source)

    voice_config = VoiceConfig.from_settings(source)
    voice_clients: List[VoiceClient] = []
    for name in voice_config.providers:
        factory = VOICE_CLIENT_FACTORIES.get(name)
        if factory is None:
            raise ValueError(f"Unknown voice provider '{name}' in VOICE_PROVIDERS")
        client = factory(source, voice_config)
        if not client.is_configured():
            logger.warning("Voice provider %s is not configured; skipping it", name)
            continue
        voice_clients.append(client)

    return ProviderGateway(chat_client, voice_clients)
