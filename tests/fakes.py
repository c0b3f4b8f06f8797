"""Fake collaborators shared by the test modules."""

import asyncio
from datetime import datetime, timedelta, timezone

from cohost.schemas.context import PropertySummary
from cohost.schemas.message import GuestMessage, Platform, SenderRole
from cohost.schemas.webhook import InboundWebhook
from cohost.services.dispatch_service import PlatformAdapter
from cohost.services.escalation_service import EscalationNotifier
from cohost.services.llm.base import GenerativeBackend


NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: float = 1000.0, now: datetime = NOW):
        self.value = start
        self.now = now

    def monotonic(self) -> float:
        return self.value

    def utcnow(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.value += seconds
        self.now += timedelta(seconds=seconds)


class FakeBackend(GenerativeBackend):
    """Counts calls; can block on an event or fail with queued errors."""

    default_model = "fake-model"

    def __init__(self, reply: str = "Yes, there is a hair dryer in the bathroom cabinet.", errors=None, delay: float = 0.0):
        self.reply = reply
        self.errors = list(errors or [])
        self.delay = delay
        self.gate = None
        self.calls = []
        self.closed = False

    async def generate(self, prompt) -> str:
        self.calls.append(prompt)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return self.reply

    async def aclose(self) -> None:
        self.closed = True


class FakeAdapter(PlatformAdapter):
    def __init__(self, failures=None):
        self.sent = []
        self.failures = list(failures or [])
        self.attempts = 0
        self.on_send = None

    async def send(self, dispatch):
        self.attempts += 1
        if self.on_send is not None:
            self.on_send(dispatch)
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append(dispatch)
        return f"msg-{len(self.sent)}"


class RecordingNotifier(EscalationNotifier):
    def __init__(self, delivered: bool = True):
        self.delivered = delivered
        self.notices = []

    async def notify_human(self, conversation_id, signal, snapshot, *, message=None, property_name=None) -> bool:
        self.notices.append(
            {
                "conversation_id": conversation_id,
                "signal": signal,
                "state": snapshot.state,
                "text": message.raw_text if message else None,
                "property_name": property_name,
            }
        )
        return self.delivered


def beach_house(**overrides) -> PropertySummary:
    values = {
        "property_id": "prop-1",
        "name": "Beach House",
        "timezone": "America/Los_Angeles",
        "address": "12 Ocean Drive, Santa Cruz",
        "wifi_network": "BeachHouse",
        "wifi_password": "sunny-days-42",
        "check_in_time": "15:00",
        "check_out_time": "11:00",
        "parking_info": "Two spots in the driveway",
        "house_rules": "No parties. Quiet hours after 10pm.",
    }
    values.update(overrides)
    return PropertySummary(**values)


def guest_message(text: str, conversation_id: str = "conv-1", event_id: str = "evt-1", **overrides) -> GuestMessage:
    values = {
        "conversation_id": conversation_id,
        "property_id": "prop-1",
        "platform": Platform.AIRBNB,
        "raw_text": text,
        "received_at": NOW,
        "sender_role": SenderRole.GUEST,
        "platform_event_id": event_id,
    }
    values.update(overrides)
    return GuestMessage(**values)


def airbnb_envelope(
    text: str,
    event_id: str = "evt-1",
    thread_id: str = "conv-1",
    property_ref: str = "prop-1",
    sender_role: str = "guest",
) -> InboundWebhook:
    return InboundWebhook.model_validate(
        {
            "platform": "airbnb",
            "event_type": "message",
            "platform_event_id": event_id,
            "property_ref": property_ref,
            "payload": {
                "thread_id": thread_id,
                "message": {"id": f"m-{event_id}", "text": text, "sender_role": sender_role},
            },
        }
    )


