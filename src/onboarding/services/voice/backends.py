from __future__ import annotations

import logging
import math
from typing import Any, Dict, FrozenSet, List, Optional, Protocol

import httpx

from src.onboarding.config import AnythingLLMConfig, OpenAIConfig
from src.onboarding.domain.ai.models import TranscriptionRequest, TranscriptionResult
from src.onboarding.domain.errors import UnsupportedInput
from src.onboarding.services.ai import transport

logger = logging.getLogger("providers")

MAX_FILE_SIZE = 25 * 1024 * 1024

# Browser MediaRecorder often reports video/webm for audio-only recordings.
OPENAI_FORMATS = frozenset(
    {
        "audio/flac",
        "audio/mp3",
        "audio/mpeg",
        "audio/mp4",
        "audio/mpga",
        "audio/ogg",
        "audio/wav",
        "audio/webm",
        "video/webm",
    }
)
ANYTHINGLLM_FORMATS = frozenset(
    {
        "audio/webm",
        "audio/wav",
        "audio/mpeg",
        "audio/mp3",
        "audio/mp4",
        "audio/ogg",
        "audio/flac",
        "video/webm",
    }
)


class VoiceClient(Protocol):
    """Protocol for speech-to-text providers."""

    name: str
    supported_formats: FrozenSet[str]
    max_file_size: int

    def is_configured(self) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    def is_available(self) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    def transcribe(self, request: TranscriptionRequest) -> TranscriptionResult:  # pragma: no cover - interface
        raise NotImplementedError


def validate_audio(client: VoiceClient, mime_type: str, size: int) -> None:
    """Raise UnsupportedInput if ``client`` cannot accept this audio."""

    if mime_type not in client.supported_formats:
        raise UnsupportedInput.unsupported_format(mime_type, client.name)
    if size > client.max_file_size:
        raise UnsupportedInput.file_too_large(size, client.max_file_size, client.name)


def average_confidence(segments: List[Dict[str, Any]]) -> Optional[float]:
    """Convert Whisper's mean segment log-probability into a 0-1 confidence."""

    logprobs = [seg["avg_logprob"] for seg in segments if seg.get("avg_logprob") is not None]
    if not logprobs:
        return None
    return round(math.exp(sum(logprobs) / len(logprobs)), 4)


class OpenAIVoiceClient:
    name = "openai"
    api_url = "https://api.openai.com/v1/audio/transcriptions"
    supported_formats = OPENAI_FORMATS

    def __init__(
        self,
        config: OpenAIConfig,
        *,
        timeout: float = 60.0,
        max_file_size: int = MAX_FILE_SIZE,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._config = config
        self._timeout = timeout
        self.max_file_size = max_file_size
        self._client = client or httpx.Client()

    def is_configured(self) -> bool:
        return bool(self._config.api_key)

    def is_available(self) -> bool:
        return self.is_configured()

    def transcribe(self, request: TranscriptionRequest) -> TranscriptionResult:
        validate_audio(self, request.mime_type, request.size)

        data: Dict[str, Any] = {
            "model": self._config.transcription_model,
            "response_format": "verbose_json",
        }
        if request.language:
            data["language"] = request.language

        body = transport.post(
            self._client,
            self.name,
            self.api_url,
            api_key=self._config.api_key,
            timeout=self._timeout,
            data=data,
            files={"file": (request.filename, request.audio, request.mime_type)},
        )
        return TranscriptionResult(
            text=body.get("text") or "",
            provider=self.name,
            language=body.get("language") or request.language,
            confidence=average_confidence(body.get("segments") or []),
            duration=body.get("duration"),
        )


class AnythingLLMVoiceClient:
    name = "anythingllm"
    supported_formats = ANYTHINGLLM_FORMATS

    def __init__(
        self,
        config: AnythingLLMConfig,
        *,
        timeout: float = 60.0,
        max_file_size: int = MAX_FILE_SIZE,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._config = config
        self._timeout = timeout
        self.max_file_size = max_file_size
        self._client = client or httpx.Client()

    def is_configured(self) -> bool:
        return bool(self._config.api_url and self._config.api_key)

    def is_available(self) -> bool:
        if not self.is_configured():
            return False
        try:
            response = self._client.get(
                f"{self._config.api_url}/api/v1/auth",
                headers=transport.bearer_headers(self._config.api_key),
                timeout=5.0,
            )
        except httpx.HTTPError as exc:
            logger.warning("AnythingLLM availability check failed: %s", exc)
            return False
        if not response.is_success:
            logger.warning("AnythingLLM auth check failed with status %s", response.status_code)
            return False
        return True

    def transcribe(self, request: TranscriptionRequest) -> TranscriptionResult:
        validate_audio(self, request.mime_type, request.size)

        body = transport.post(
            self._client,
            self.name,
            f"{self._config.api_url}/api/v1/audio/transcribe",
            api_key=self._config.api_key,
            timeout=self._timeout,
            data={"language": request.language} if request.language else None,
            files={"audio": (request.filename, request.audio, request.mime_type)},
        )
        return TranscriptionResult(
            text=body.get("text") or body.get("transcription") or "",
            provider=self.name,
            language=body.get("language") or request.language,
            confidence=body.get("confidence"),
            duration=body.get("duration"),
        )


class DemoVoiceClient:
    """Offline transcription provider returning a deterministic placeholder."""

    name = "demo"
    supported_formats = OPENAI_FORMATS

    def __init__(self, max_file_size: int = MAX_FILE_SIZE) -> None:
        self.max_file_size = max_file_size

    def is_configured(self) -> bool:
        return True

    def is_available(self) -> bool:
        return True

    def transcribe(self, request: TranscriptionRequest) -> TranscriptionResult:
        validate_audio(self, request.mime_type, request.size)
        lang = request.language or "unknown-lang"
        return TranscriptionResult(
            text=f"Demo transcript for {request.filename} in {lang}",
            provider=self.name,
            language=request.language,
            confidence=1.0,
            duration=None,
        )
