from typing import List, Optional

import httpx

from salesbot.logging_config import get_logger
from salesbot.services.errors import FatalError, RetryableError
from salesbot.services.llm.base import GenerationParams, LLMProvider, LLMResponse

logger = get_logger("llm.openai")

NON_RETRYABLE_STATUSES = {400, 401}


def _raise_for_status(response: httpx.Response, operation: str) -> None:
    if response.status_code == 200:
        return
    detail = response.text[:500]
    logger.error(
        f"OpenAI {operation} error",
        extra={"context": {"status": response.status_code, "body": detail}},
    )
    message = f"OpenAI {operation} error: {response.status_code} - {detail}"
    if response.status_code in NON_RETRYABLE_STATUSES:
        raise FatalError(message)
    raise RetryableError(message)


class OpenAIProvider(LLMProvider):
    """OpenAI-compatible chat completions provider.

    ``base_url`` can point at any server speaking the same API, such as a local model.
    """

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        transcription_model: str = "whisper-1",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = base_url.rstrip("/")
        self.transcription_model = transcription_model
        self._client = httpx.AsyncClient(base_url=self.base_url, transport=transport)

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def generate(self, messages: List[dict], params: GenerationParams) -> LLMResponse:
        """Generate response from OpenAI."""
        model = params.model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": params.temperature,
            "max_tokens": params.max_tokens,
        }
        for name in ("top_p", "presence_penalty", "frequency_penalty"):
            value = getattr(params, name)
            if value is not None:
                payload[name] = value

        timeout = params.timeout_seconds if params.timeout_seconds is not None else 60.0
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")
        try:
            response = await self._client.post(
                "/chat/completions", headers=self._headers(), json=payload, timeout=timeout
            )
        except httpx.TimeoutException as e:
            raise RetryableError(f"OpenAI request timed out after {timeout}s") from e
        except httpx.TransportError as e:
            raise RetryableError(f"OpenAI transport error: {e}") from e

        _raise_for_status(response, "completion")
        data = response.json()

        content = ""
        if data.get("choices"):
            message = data["choices"][0].get("message", {})
            content = message.get("content") or ""
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(content=content, model=data.get("model", model), usage=data.get("usage"))

    async def transcribe_audio(
        self,
        *,
        audio_bytes: bytes,
        filename: str,
        mime_type: Optional[str] = None,
        language: Optional[str] = None,
    ) -> str:
        """Transcribe audio using OpenAI speech-to-text."""
        if not audio_bytes:
            raise ValueError("audio_bytes is empty")

        files = {"file": (filename or "audio", audio_bytes, mime_type or "application/octet-stream")}
        data = {"model": self.transcription_model, "response_format": "text"}
        if language:
            data["language"] = language

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            response = await self._client.post(
                "/audio/transcriptions", headers=headers, files=files, data=data, timeout=30.0
            )
        except httpx.TimeoutException as e:
            raise RetryableError("OpenAI transcription timed out") from e
        except httpx.TransportError as e:
            raise RetryableError(f"OpenAI transport error: {e}") from e

        _raise_for_status(response, "transcription")
        transcript = (response.text or "").strip()
        if not transcript:
            logger.warning("OpenAI transcription returned empty text")
        return transcript

    async def aclose(self) -> None:
        await self._client.aclose()
