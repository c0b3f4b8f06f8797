import asyncio
import random

import httpx
import pytest

from cohost.schemas.message import Platform
from cohost.services.dispatch_service import (
    ChannelApiAdapter,
    DispatchGateway,
    OutboundDispatch,
    PlatformAdapter,
    build_idempotency_key,
)
from cohost.services.errors import PermanentDispatchError, TransientDispatchError
from fakes import FakeAdapter

DISPATCH = OutboundDispatch(platform="airbnb", conversation_ref="conv-1", text="Hello!", idempotency_key="key-1")


def _gateway(adapter, sleeps, **kwargs) -> DispatchGateway:
    async def sleep(delay):
        sleeps.append(delay)

    return DispatchGateway({"airbnb": adapter}, sleep=sleep, rng=random.Random(3), **kwargs)


def _adapter(handler) -> ChannelApiAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ChannelApiAdapter("https://api.example.test/v1/", token="secret", client=client)


class HangingAdapter(PlatformAdapter):
    async def send(self, dispatch):
        await asyncio.sleep(1)
        return "late"


class TestIdempotencyKey:
    def test_stable_per_event(self):
        assert build_idempotency_key("conv-1", "evt-1") == build_idempotency_key("conv-1", "evt-1")

    def test_purpose_and_event_change_key(self):
        reply = build_idempotency_key("conv-1", "evt-1", "reply")
        assert reply != build_idempotency_key("conv-1", "evt-1", "holding")
        assert reply != build_idempotency_key("conv-1", "evt-2", "reply")


class TestDispatchGateway:
    def test_sends_through_platform_adapter(self):
        adapter = FakeAdapter()
        receipt = asyncio.run(_gateway(adapter, []).send(Platform.AIRBNB, "conv-1", "Hello!", idempotency_key="k"))

        assert receipt.status == "sent"
        assert receipt.platform_message_id == "msg-1"
        assert receipt.attempts == 1
        assert adapter.sent[0].text == "Hello!"
        assert adapter.sent[0].idempotency_key == "k"

    def test_retries_transient_failures_with_backoff(self):
        sleeps = []
        adapter = FakeAdapter(failures=[TransientDispatchError("503"), TransientDispatchError("429")])
        gateway = _gateway(adapter, sleeps, backoff_seconds=0.5, backoff_max_seconds=8.0)

        receipt = asyncio.run(gateway.send("airbnb", "conv-1", "Hello!", idempotency_key="k"))

        assert receipt.attempts == 3
        assert len(sleeps) == 2
        assert 0.5 <= sleeps[0] <= 1.0
        assert 1.0 <= sleeps[1] <= 1.5

    def test_backoff_is_capped(self):
        gateway = _gateway(FakeAdapter(), [], backoff_seconds=1.0, backoff_max_seconds=4.0)
        assert 4.0 <= gateway.backoff(6) <= 5.0

    def test_exhausted_retries_raise(self):
        sleeps = []
        adapter = FakeAdapter(failures=[TransientDispatchError("503") for _ in range(5)])
        gateway = _gateway(adapter, sleeps, max_attempts=3)

        with pytest.raises(TransientDispatchError) as exc_info:
            asyncio.run(gateway.send("airbnb", "conv-1", "Hello!", idempotency_key="k"))

        assert exc_info.value.attempts == 3
        assert adapter.attempts == 3
        assert len(sleeps) == 2

    def test_permanent_failure_is_not_retried(self):
        sleeps = []
        adapter = FakeAdapter(failures=[PermanentDispatchError("forbidden", "http_403")])

        with pytest.raises(PermanentDispatchError) as exc_info:
            asyncio.run(_gateway(adapter, sleeps).send("airbnb", "conv-1", "Hello!", idempotency_key="k"))

        assert exc_info.value.attempts == 1
        assert sleeps == []

    def test_unknown_platform(self):
        with pytest.raises(PermanentDispatchError) as exc_info:
            asyncio.run(_gateway(FakeAdapter(), []).send("vrbo", "conv-1", "Hello!", idempotency_key="k"))
        assert exc_info.value.code == "unknown_platform"

    def test_slow_send_counts_as_transient(self):
        gateway = _gateway(HangingAdapter(), [], max_attempts=2, timeout_seconds=0.01)

        with pytest.raises(TransientDispatchError) as exc_info:
            asyncio.run(gateway.send("airbnb", "conv-1", "Hello!", idempotency_key="k"))
        assert exc_info.value.code == "dispatch_timeout"
        assert exc_info.value.attempts == 2


class TestChannelApiAdapter:
    def test_posts_message_with_idempotency_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = request.content
            return httpx.Response(201, json={"id": 987})

        message_id = asyncio.run(_adapter(handler).send(DISPATCH))

        assert message_id == "987"
        assert seen["url"] == "https://api.example.test/v1/conversations/conv-1/messages"
        assert seen["headers"]["Idempotency-Key"] == "key-1"
        assert seen["headers"]["Authorization"] == "Bearer secret"
        assert b"Hello!" in seen["body"]

    def test_alternate_message_id_field(self):
        message_id = asyncio.run(_adapter(lambda request: httpx.Response(200, json={"messageId": "m-5"})).send(DISPATCH))
        assert message_id == "m-5"

    def test_no_json_body(self):
        message_id = asyncio.run(_adapter(lambda request: httpx.Response(204)).send(DISPATCH))
        assert message_id is None

    @pytest.mark.parametrize("status", [408, 429, 500, 503])
    def test_transient_statuses(self, status):
        with pytest.raises(TransientDispatchError) as exc_info:
            asyncio.run(_adapter(lambda request: httpx.Response(status)).send(DISPATCH))
        assert exc_info.value.code == f"http_{status}"

    @pytest.mark.parametrize("status", [400, 401, 404, 422])
    def test_permanent_statuses(self, status):
        with pytest.raises(PermanentDispatchError):
            asyncio.run(_adapter(lambda request: httpx.Response(status, text="bad")).send(DISPATCH))

    def test_transport_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientDispatchError) as exc_info:
            asyncio.run(_adapter(handler).send(DISPATCH))
        assert exc_info.value.code == "platform_unreachable"

    def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(TransientDispatchError) as exc_info:
            asyncio.run(_adapter(handler).send(DISPATCH))
        assert exc_info.value.code == "platform_timeout"
