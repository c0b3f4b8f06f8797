from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime, timezone

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from cohost.logging_config import get_logger
from cohost.models import ProcessedEvent
from cohost.schemas.message import GuestMessage, Platform
from cohost.schemas.webhook import PAYLOAD_MODELS, EventType, InboundWebhook, PlatformPayload
from cohost.services.clock import SystemClock
from cohost.services.errors import DuplicateEvent, NormalizationError

logger = get_logger("ingestion_service")


class EventLedger(ABC):
    """Remembers which ``(platform, platform_event_id)`` pairs were already processed."""

    @abstractmethod
    async def claim(self, platform: str, platform_event_id: str, *, event_type: str, conversation_ref: str | None) -> bool:
        """Atomically record the event. Returns False if it was already claimed."""

    @abstractmethod
    async def release(self, platform: str, platform_event_id: str) -> None:
        """Forget a claim so a redelivery of the event is processed again."""


class InMemoryEventLedger(EventLedger):
    def __init__(self, max_events: int = 100_000):
        self.max_events = max_events
        self._seen: OrderedDict[tuple[str, str], None] = OrderedDict()

    async def claim(self, platform: str, platform_event_id: str, *, event_type: str, conversation_ref: str | None) -> bool:
        key = (platform, platform_event_id)
        if key in self._seen:
            return False
        self._seen[key] = None
        while len(self._seen) > self.max_events:
            self._seen.popitem(last=False)
        return True

    async def release(self, platform: str, platform_event_id: str) -> None:
        self._seen.pop((platform, platform_event_id), None)


class SqlEventLedger(EventLedger):
    """Persistent dedup that survives restarts; the unique constraint decides races.

    Sessions are synchronous, so each call runs in a worker thread.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def claim(self, platform: str, platform_event_id: str, *, event_type: str, conversation_ref: str | None) -> bool:
        return await asyncio.to_thread(self._claim, platform, platform_event_id, event_type, conversation_ref)

    async def release(self, platform: str, platform_event_id: str) -> None:
        await asyncio.to_thread(self._release, platform, platform_event_id)

    def _claim(self, platform: str, platform_event_id: str, event_type: str, conversation_ref: str | None) -> bool:
        db = self.session_factory()
        try:
            db.add(
                ProcessedEvent(
                    platform=platform,
                    platform_event_id=platform_event_id,
                    event_type=event_type,
                    conversation_ref=conversation_ref,
                )
            )
            db.commit()
            return True
        except IntegrityError:
            db.rollback()
            return False
        finally:
            db.close()

    def _release(self, platform: str, platform_event_id: str) -> None:
        db = self.session_factory()
        try:
            db.query(ProcessedEvent).filter(
                ProcessedEvent.platform == platform,
                ProcessedEvent.platform_event_id == platform_event_id,
            ).delete()
            db.commit()
        finally:
            db.close()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class IngestionNormalizer:
    """Turns platform envelopes into canonical ``GuestMessage`` objects, exactly once per event."""

    def __init__(self, ledger: EventLedger, clock=None):
        self.ledger = ledger
        self.clock = clock or SystemClock()

    def parse_platform(self, envelope: InboundWebhook) -> Platform:
        try:
            return Platform(envelope.platform.strip().lower())
        except ValueError:
            raise NormalizationError(f"Unsupported platform: {envelope.platform}", "unsupported_platform")

    def parse_payload(self, platform: Platform, envelope: InboundWebhook) -> PlatformPayload:
        model = PAYLOAD_MODELS[platform]
        try:
            return model.model_validate(envelope.payload)
        except ValidationError as exc:
            raise NormalizationError(f"Malformed {platform.value} payload: {exc.error_count()} error(s)", "malformed_payload")

    def parse(self, envelope: InboundWebhook) -> GuestMessage:
        """Validate without recording anything."""
        if envelope.event_type != EventType.MESSAGE:
            raise NormalizationError(f"Event type {envelope.event_type.value} is not a message", "not_a_message")

        platform = self.parse_platform(envelope)
        payload = self.parse_payload(platform, envelope)

        conversation_id = envelope.conversation_ref or payload.conversation_ref()
        if not conversation_id:
            raise NormalizationError("Missing conversation identity", "missing_conversation")

        property_id = envelope.property_ref or payload.property_ref()
        if not property_id:
            raise NormalizationError("Missing property reference", "missing_property")

        text = (payload.text() or "").strip()
        if not text:
            raise NormalizationError("Message has no text", "empty_message")

        sent_at = payload.sent_at()
        received_at = _as_utc(sent_at) if sent_at else self.clock.utcnow()

        return GuestMessage(
            conversation_id=conversation_id,
            property_id=property_id,
            platform=platform,
            raw_text=text,
            received_at=received_at,
            sender_role=payload.sender_role(),
            platform_event_id=envelope.platform_event_id,
        )

    async def claim(self, envelope: InboundWebhook, conversation_ref: str | None = None) -> None:
        """Record the event; raises ``DuplicateEvent`` on redelivery."""
        platform = envelope.platform.strip().lower()
        claimed = await self.ledger.claim(
            platform,
            envelope.platform_event_id,
            event_type=envelope.event_type.value,
            conversation_ref=conversation_ref or envelope.conversation_ref,
        )
        if not claimed:
            logger.info(
                "Duplicate platform event",
                extra={"context": {"platform": platform, "platform_event_id": envelope.platform_event_id}},
            )
            raise DuplicateEvent(f"Event {platform}:{envelope.platform_event_id} already processed")

    async def release(self, envelope: InboundWebhook) -> None:
        """Undo ``claim`` for an event that was accepted but never handled."""
        platform = envelope.platform.strip().lower()
        await self.ledger.release(platform, envelope.platform_event_id)
        logger.info(
            "Platform event released for redelivery",
            extra={"context": {"platform": platform, "platform_event_id": envelope.platform_event_id}},
        )

    async def normalize(self, envelope: InboundWebhook) -> GuestMessage:
        """Parse then claim; a malformed delivery is never claimed, so a fixed redelivery still goes through."""
        message = self.parse(envelope)
        await self.claim(envelope, conversation_ref=message.conversation_id)
        return message
