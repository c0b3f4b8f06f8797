import asyncio
import json

import httpx
import pytest

from cohost.services.llm import GenerationError, OpenAIProvider, PromptContext

PROMPT = PromptContext(system_prompt="You are a co-host.", user_message="Is there a hair dryer?")


def _provider(handler) -> OpenAIProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAIProvider("test-key", default_model="gpt-test", client=client)


def _completion(content: str, finish_reason: str = "stop") -> dict:
    return {
        "model": "gpt-test",
        "choices": [{"message": {"role": "assistant", "content": content}, "finish_reason": finish_reason}],
        "usage": {"total_tokens": 12},
    }


class TestOpenAIProvider:
    def test_generate_returns_content(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json=_completion("Yes, under the sink."))

        text = asyncio.run(_provider(handler).generate(PROMPT))

        assert text == "Yes, under the sink."
        assert seen["auth"] == "Bearer test-key"
        assert seen["body"]["model"] == "gpt-test"
        assert [m["role"] for m in seen["body"]["messages"]] == ["system", "user"]

    def test_complete_reports_usage(self):
        response = asyncio.run(
            _provider(lambda request: httpx.Response(200, json=_completion("ok"))).complete(PROMPT.to_messages())
        )
        assert response.model == "gpt-test"
        assert response.usage == {"total_tokens": 12}

    def test_rate_limited(self):
        with pytest.raises(GenerationError) as exc_info:
            asyncio.run(_provider(lambda request: httpx.Response(429)).generate(PROMPT))
        assert exc_info.value.kind == GenerationError.RATE_LIMITED
        assert exc_info.value.transient is True

    def test_server_error_is_transient(self):
        with pytest.raises(GenerationError) as exc_info:
            asyncio.run(_provider(lambda request: httpx.Response(503)).generate(PROMPT))
        assert exc_info.value.kind == GenerationError.TIMEOUT

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(GenerationError) as exc_info:
            asyncio.run(_provider(handler).generate(PROMPT))
        assert exc_info.value.kind == GenerationError.TIMEOUT

    def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(GenerationError) as exc_info:
            asyncio.run(_provider(handler).generate(PROMPT))
        assert exc_info.value.transient is True
        assert "unreachable" in str(exc_info.value)

    def test_content_filter(self):
        handler = lambda request: httpx.Response(200, json=_completion("", finish_reason="content_filter"))  # noqa: E731
        with pytest.raises(GenerationError) as exc_info:
            asyncio.run(_provider(handler).generate(PROMPT))
        assert exc_info.value.kind == GenerationError.CONTENT_POLICY
        assert exc_info.value.transient is False

    def test_policy_rejection(self):
        handler = lambda request: httpx.Response(400, json={"error": {"code": "content_policy_violation"}})  # noqa: E731
        with pytest.raises(GenerationError) as exc_info:
            asyncio.run(_provider(handler).generate(PROMPT))
        assert exc_info.value.kind == GenerationError.CONTENT_POLICY

    def test_other_client_error(self):
        with pytest.raises(Exception, match="OpenAI API error: 401"):
            asyncio.run(_provider(lambda request: httpx.Response(401, text="bad key")).generate(PROMPT))


class TestPromptContext:
    def test_history_sits_between_system_and_user(self):
        prompt = PromptContext(
            system_prompt="sys",
            user_message="now",
            history=[{"role": "assistant", "content": "earlier"}],
        )
        assert [m["content"] for m in prompt.to_messages()] == ["sys", "earlier", "now"]
