from cohost.services.llm.base import GenerationError, GenerativeBackend, LLMResponse, PromptContext
from cohost.services.llm.openai_provider import OpenAIProvider

__all__ = ["GenerationError", "GenerativeBackend", "LLMResponse", "OpenAIProvider", "PromptContext"]
