import asyncio
import json
import random
from unittest.mock import AsyncMock, Mock

import httpx

from cohost.services.classifier_service import EscalationSignal, ReasonCode, Severity
from cohost.services.escalation_service import HumanNotifier, LoggingEscalationNotifier, TelegramEscalationNotifier
from cohost.services.state_machine import ConversationState
from cohost.services.state_service import ConversationSnapshot
from cohost.services.telegram_service import TelegramService, format_handover_message
from fakes import RecordingNotifier, guest_message

SNAPSHOT = ConversationSnapshot(
    conversation_id="conv-1",
    state=ConversationState.ESCALATED,
    pending=0,
    epoch=1,
    escalation_reasons=frozenset({"safety"}),
    updated_at=None,
)
EMERGENCY = EscalationSignal(severity=Severity.EMERGENCY, reasons=frozenset({ReasonCode.SAFETY}), confidence=0.95)
REFUND = EscalationSignal(severity=Severity.URGENT, reasons=frozenset({ReasonCode.REFUND}), confidence=0.85)


class FailingNotifier(LoggingEscalationNotifier):
    async def notify_human(self, *args, **kwargs):
        raise RuntimeError("chat down")


class TestFormatHandoverMessage:
    def test_includes_reason_and_text(self):
        text = format_handover_message(
            conversation_id="conv-1",
            platform="airbnb",
            property_name="Beach House",
            severity="emergency",
            reasons=["safety"],
            message="There's a gas leak, help!",
        )

        assert "🚨" in text
        assert "Safety emergency" in text
        assert "Beach House" in text
        assert "There's a gas leak, help!" in text

    def test_escapes_html(self):
        text = format_handover_message("conv-1", None, None, "urgent", ["refund"], "<b>refund</b> now")
        assert "&lt;b&gt;refund&lt;/b&gt;" in text
        assert "unknown" in text
        assert "🔔" in text

    def test_unknown_reason_uses_code(self):
        text = format_handover_message("conv-1", "vrbo", "Loft", "notice", ["mystery"], "hm")
        assert "mystery" in text


class TestTelegramEscalationNotifier:
    def test_sends_and_pins_emergencies(self):
        telegram = Mock()
        telegram.send_message = AsyncMock(return_value={"ok": True, "result": {"message_id": 42}})
        telegram.pin_message = AsyncMock(return_value={"ok": True})
        notifier = TelegramEscalationNotifier(telegram, "chat-1", message_thread_id=7)

        delivered = asyncio.run(
            notifier.notify_human(
                "conv-1", EMERGENCY, SNAPSHOT, message=guest_message("There's a gas leak, help!"), property_name="Beach House"
            )
        )

        assert delivered is True
        kwargs = telegram.send_message.call_args.kwargs
        assert kwargs["chat_id"] == "chat-1"
        assert kwargs["message_thread_id"] == 7
        assert "There's a gas leak, help!" in kwargs["text"]
        telegram.pin_message.assert_awaited_once_with("chat-1", 42)

    def test_urgent_is_not_pinned(self):
        telegram = Mock()
        telegram.send_message = AsyncMock(return_value={"ok": True, "result": {"message_id": 43}})
        telegram.pin_message = AsyncMock()
        notifier = TelegramEscalationNotifier(telegram, "chat-1")

        asyncio.run(notifier.notify_human("conv-1", REFUND, SNAPSHOT, message=guest_message("refund please")))

        telegram.pin_message.assert_not_awaited()

    def test_rejected_send(self):
        telegram = Mock()
        telegram.send_message = AsyncMock(return_value={"ok": False, "description": "chat not found"})
        notifier = TelegramEscalationNotifier(telegram, "chat-1")

        assert asyncio.run(notifier.notify_human("conv-1", REFUND, SNAPSHOT)) is False
        telegram.send_message.assert_awaited_once()

    def test_rate_limited_send_is_retried(self):
        responses = [
            httpx.Response(429, json={"ok": False, "error_code": 429, "parameters": {"retry_after": 3}}),
            httpx.Response(200, json={"ok": True, "result": {"message_id": 44}}),
        ]
        calls = []
        delays = []

        def handler(request):
            calls.append(request.url.path)
            return responses.pop(0)

        async def no_sleep(delay):
            delays.append(delay)

        service = TelegramService("token-1", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        notifier = TelegramEscalationNotifier(service, "chat-1", sleep=no_sleep)

        delivered = asyncio.run(notifier.notify_human("conv-1", REFUND, SNAPSHOT, message=guest_message("refund please")))

        assert delivered is True
        assert calls == ["/bottoken-1/sendMessage", "/bottoken-1/sendMessage"]
        assert delays == [3.0]

    def test_outage_gives_up_after_max_attempts(self):
        calls = []
        delays = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(502, text="Bad Gateway")

        async def no_sleep(delay):
            delays.append(delay)

        service = TelegramService("token-1", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        notifier = TelegramEscalationNotifier(
            service, "chat-1", max_attempts=3, backoff_seconds=0.5, sleep=no_sleep, rng=random.Random(7)
        )

        assert asyncio.run(notifier.notify_human("conv-1", REFUND, SNAPSHOT)) is False
        assert len(calls) == 3
        assert len(delays) == 2
        assert 0.5 <= delays[0] < 1.0
        assert 1.0 <= delays[1] < 1.5


class TestTelegramService:
    def test_send_message_payload(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"ok": True, "result": {"message_id": 1}})

        service = TelegramService("token-1", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        result = asyncio.run(service.send_message("chat-1", "hello", message_thread_id=9))

        assert result["ok"] is True
        assert seen["url"] == "https://api.telegram.org/bottoken-1/sendMessage"
        assert seen["body"] == {"chat_id": "chat-1", "text": "hello", "parse_mode": "HTML", "message_thread_id": 9}

    def test_transport_error_is_reported(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        service = TelegramService("token-1", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        result = asyncio.run(service.pin_message("chat-1", 5))

        assert result["ok"] is False
        assert result["transient"] is True

    def test_client_error_is_not_transient(self):
        def handler(request):
            return httpx.Response(400, json={"ok": False, "error_code": 400, "description": "Bad Request: chat not found"})

        service = TelegramService("token-1", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        result = asyncio.run(service.send_message("chat-1", "hello"))

        assert result["ok"] is False
        assert "transient" not in result


class TestHumanNotifier:
    def test_notifies_in_background(self):
        recorder = RecordingNotifier()

        async def scenario():
            human = HumanNotifier(recorder)
            task = human.notify("conv-1", EMERGENCY, SNAPSHOT, message=guest_message("gas leak"), property_name="Beach House")
            pending = human.pending
            delivered = await task
            return human, pending, delivered

        human, pending, delivered = asyncio.run(scenario())

        assert pending == 1
        assert delivered is True
        assert human.pending == 0
        assert recorder.notices[0]["text"] == "gas leak"
        assert recorder.notices[0]["property_name"] == "Beach House"

    def test_failure_is_contained(self):
        async def scenario():
            human = HumanNotifier(FailingNotifier())
            return await human.notify("conv-1", REFUND, SNAPSHOT)

        assert asyncio.run(scenario()) is False

    def test_drain_waits_for_all(self):
        recorder = RecordingNotifier()

        async def scenario():
            human = HumanNotifier(recorder)
            for _ in range(3):
                human.notify("conv-1", REFUND, SNAPSHOT)
            await human.aclose()
            return human

        human = asyncio.run(scenario())
        assert len(recorder.notices) == 3
        assert human.pending == 0

    def test_logging_notifier_always_delivers(self):
        assert asyncio.run(LoggingEscalationNotifier().notify_human("conv-1", REFUND, SNAPSHOT)) is True
