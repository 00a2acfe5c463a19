from app.services.llm.base import LLMProvider, LLMUsage, StructuredLLMResponse
from app.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMProvider", "LLMUsage", "OpenAIProvider", "StructuredLLMResponse"]
