from typing import List, Optional

from salesbot.logging_config import get_logger
from salesbot.services.errors import FatalError
from salesbot.services.llm.base import GenerationParams, LLMProvider, LLMResponse
from salesbot.services.retry import RetryPolicy, retry_async

logger = get_logger("llm.gateway")


class ModelGateway:
    """Retries provider calls on RetryableError with capped backoff."""

    def __init__(
        self,
        provider: LLMProvider,
        retry_policy: Optional[RetryPolicy] = None,
        params: Optional[GenerationParams] = None,
    ):
        self.provider = provider
        self.retry_policy = retry_policy or RetryPolicy()
        self.params = params or GenerationParams()

    async def complete(self, messages: List[dict], params: Optional[GenerationParams] = None) -> LLMResponse:
        params = params or self.params
        response = await retry_async(
            lambda: self.provider.generate(messages, params), self.retry_policy, "llm.generate"
        )
        if not response.content.strip():
            raise FatalError("Model returned an empty response")
        if response.usage:
            logger.info("Model call completed", extra={"context": {"model": response.model, "usage": response.usage}})
        return response

    async def transcribe(
        self,
        audio_bytes: bytes,
        filename: str,
        mime_type: Optional[str] = None,
        language: Optional[str] = None,
    ) -> str:
        return await retry_async(
            lambda: self.provider.transcribe_audio(
                audio_bytes=audio_bytes, filename=filename, mime_type=mime_type, language=language
            ),
            self.retry_policy,
            "llm.transcribe",
        )

    async def aclose(self) -> None:
        await self.provider.aclose()
