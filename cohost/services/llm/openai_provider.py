from typing import List, Optional

import httpx

from cohost.logging_config import get_logger
from cohost.services.llm.base import GenerationError, GenerativeBackend, LLMResponse, PromptContext

logger = get_logger("llm.openai")


class OpenAIProvider(GenerativeBackend):
    """OpenAI chat completions backend."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
        timeout_seconds: float = 8.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds
        self.base_url = "https://api.openai.com/v1/chat/completions"
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def complete(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.4,
        max_tokens: int = 400,
    ) -> LLMResponse:
        """Raw chat completion call."""
        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_completion_tokens": max_tokens,
        }
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        try:
            response = await self._get_client().post(
                self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )
        except httpx.TimeoutException as exc:
            raise GenerationError(GenerationError.TIMEOUT, f"OpenAI timeout: {exc}")
        except httpx.TransportError as exc:
            # connection refused or reset: retried like a timeout
            raise GenerationError(GenerationError.TIMEOUT, f"OpenAI unreachable: {exc}")

        logger.debug(f"OpenAI response status: {response.status_code}")

        if response.status_code == 429:
            raise GenerationError(GenerationError.RATE_LIMITED, "OpenAI rate limited")
        if response.status_code >= 500:
            raise GenerationError(GenerationError.TIMEOUT, f"OpenAI unavailable: {response.status_code}")
        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text}")
            if "content_policy" in response.text or "content_filter" in response.text:
                raise GenerationError(GenerationError.CONTENT_POLICY, "OpenAI refused the prompt")
            raise Exception(f"OpenAI API error: {response.status_code} - {response.text}")

        data = response.json()

        content = ""
        if data.get("choices") and len(data["choices"]) > 0:
            choice = data["choices"][0]
            if choice.get("finish_reason") == "content_filter":
                raise GenerationError(GenerationError.CONTENT_POLICY, "OpenAI content filter")
            message = choice.get("message", {})
            content = message.get("content") or ""
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )

    async def generate(self, prompt: PromptContext) -> str:
        response = await self.complete(
            prompt.to_messages(),
            temperature=prompt.temperature,
            max_tokens=prompt.max_tokens,
        )
        return response.content

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
