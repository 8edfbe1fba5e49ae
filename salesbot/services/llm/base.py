from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from salesbot.services.errors import FatalError


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


@dataclass(frozen=True)
class GenerationParams:
    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 800
    top_p: Optional[float] = None
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    timeout_seconds: Optional[float] = None

    @classmethod
    def from_settings(cls, settings) -> "GenerationParams":
        return cls(
            model=settings.openai_model,
            temperature=settings.openai_temperature,
            max_tokens=settings.openai_max_tokens,
            top_p=settings.openai_top_p,
            presence_penalty=settings.openai_presence_penalty,
            frequency_penalty=settings.openai_frequency_penalty,
            timeout_seconds=settings.openai_timeout_seconds,
        )


class LLMProvider(ABC):
    """Abstract base class for LLM providers.

    Implementations raise RetryableError for timeouts, transport errors, rate limits and
    5xx responses, and FatalError for requests that cannot succeed on retry.
    """

    @abstractmethod
    async def generate(self, messages: List[dict], params: GenerationParams) -> LLMResponse:
        """Generate response from LLM."""
        pass

    async def transcribe_audio(
        self,
        *,
        audio_bytes: bytes,
        filename: str,
        mime_type: Optional[str] = None,
        language: Optional[str] = None,
    ) -> str:
        """Transcribe an audio clip to text.

        Providers without speech support keep this default, which raises FatalError so
        the caller records the audio as untranscribed instead of retrying.
        """
        raise FatalError(f"{type(self).__name__} does not support transcription")

    async def aclose(self) -> None:
        pass
