from salesbot.services.llm.base import GenerationParams, LLMProvider, LLMResponse
from salesbot.services.llm.gateway import ModelGateway
from salesbot.services.llm.openai_provider import OpenAIProvider

__all__ = ["GenerationParams", "LLMProvider", "LLMResponse", "ModelGateway", "OpenAIProvider"]
