"""Assembles the property, booking and history snapshot for one inbound message."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import timezone
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from cohost.logging_config import get_logger
from cohost.models import Booking, ConversationTurn, Property
from cohost.schemas.context import BookingSummary, ConversationContext, PropertySummary
from cohost.schemas.message import Flag, Turn
from cohost.services.errors import ContextUnavailable

logger = get_logger("context_service")


class RepositoryError(Exception):
    pass


class NotFound(RepositoryError):
    pass


class Unavailable(RepositoryError):
    """Store temporarily unreachable; worth retrying."""


class ContextRepository(ABC):
    @abstractmethod
    async def get_property(self, property_id: str) -> PropertySummary:
        pass

    @abstractmethod
    async def get_booking(self, conversation_id: str) -> Optional[BookingSummary]:
        """Booking linked to the conversation, or None for pre-booking inquiries."""
        pass

    @abstractmethod
    async def get_history(self, conversation_id: str, limit: int) -> List[Turn]:
        """Most recent ``limit`` turns, in canonical order."""
        pass

    @abstractmethod
    async def get_flagged_history(self, conversation_id: str) -> List[Turn]:
        pass

    @abstractmethod
    async def append_turn(self, conversation_id: str, turn: Turn) -> Turn:
        """Persist a turn and return it with its assigned ``seq``."""
        pass


class InMemoryContextRepository(ContextRepository):
    def __init__(self):
        self.properties: Dict[str, PropertySummary] = {}
        self.bookings: Dict[str, BookingSummary] = {}
        self.turns: Dict[str, List[Turn]] = {}
        self._next_seq = 1

    def add_property(self, summary: PropertySummary) -> None:
        self.properties[summary.property_id] = summary

    def add_booking(self, conversation_id: str, summary: BookingSummary) -> None:
        self.bookings[conversation_id] = summary

    async def get_property(self, property_id: str) -> PropertySummary:
        summary = self.properties.get(property_id)
        if summary is None:
            raise NotFound(f"Property {property_id} not found")
        return summary

    async def get_booking(self, conversation_id: str) -> Optional[BookingSummary]:
        return self.bookings.get(conversation_id)

    def _ordered(self, conversation_id: str) -> List[Turn]:
        return sorted(self.turns.get(conversation_id, []), key=Turn.sort_key)

    async def get_history(self, conversation_id: str, limit: int) -> List[Turn]:
        if limit <= 0:
            return []
        return self._ordered(conversation_id)[-limit:]

    async def get_flagged_history(self, conversation_id: str) -> List[Turn]:
        return [turn for turn in self._ordered(conversation_id) if turn.flagged]

    async def append_turn(self, conversation_id: str, turn: Turn) -> Turn:
        stored = turn.model_copy(update={"seq": self._next_seq})
        self._next_seq += 1
        self.turns.setdefault(conversation_id, []).append(stored)
        return stored


def _aware(value):
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _turn_from_row(row: ConversationTurn) -> Turn:
    return Turn(
        speaker=row.speaker,
        text=row.text,
        timestamp=_aware(row.timestamp),
        channel=row.channel,
        seq=row.seq,
        flags=frozenset(Flag(flag) for flag in (row.flags or [])),
    )


class SqlContextRepository(ContextRepository):
    """Reads the service's own tables, one short-lived session per call, in a worker thread."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def get_property(self, property_id: str) -> PropertySummary:
        return await asyncio.to_thread(self._get_property, property_id)

    async def get_booking(self, conversation_id: str) -> Optional[BookingSummary]:
        return await asyncio.to_thread(self._get_booking, conversation_id)

    async def get_history(self, conversation_id: str, limit: int) -> List[Turn]:
        return await asyncio.to_thread(self._get_history, conversation_id, limit)

    async def get_flagged_history(self, conversation_id: str) -> List[Turn]:
        return await asyncio.to_thread(self._get_flagged_history, conversation_id)

    async def append_turn(self, conversation_id: str, turn: Turn) -> Turn:
        return await asyncio.to_thread(self._append_turn, conversation_id, turn)

    def _get_property(self, property_id: str) -> PropertySummary:
        db = self.session_factory()
        try:
            row = db.query(Property).filter(Property.id == property_id).first()
            if row is None:
                raise NotFound(f"Property {property_id} not found")
            return PropertySummary(
                property_id=row.id,
                name=row.name,
                version=row.version,
                timezone=row.timezone,
                address=row.address,
                wifi_network=row.wifi_network,
                wifi_password=row.wifi_password,
                check_in_time=row.check_in_time,
                check_out_time=row.check_out_time,
                parking_info=row.parking_info,
                house_rules=row.house_rules,
                policies=list(row.policies or []),
                cache_ttl_seconds=row.cache_ttl_seconds,
            )
        except SQLAlchemyError as exc:
            raise Unavailable(f"Property lookup failed: {exc}")
        finally:
            db.close()

    def _get_booking(self, conversation_id: str) -> Optional[BookingSummary]:
        db = self.session_factory()
        try:
            row = (
                db.query(Booking)
                .filter(Booking.conversation_id == conversation_id)
                .filter(Booking.status != "cancelled")
                .first()
            )
            if row is None:
                return None
            return BookingSummary(
                booking_id=row.id,
                guest_name=row.guest_name,
                check_in_date=row.check_in_date,
                check_out_date=row.check_out_date,
                door_code=row.door_code,
                status=row.status,
                guests=row.guests,
            )
        except SQLAlchemyError as exc:
            raise Unavailable(f"Booking lookup failed: {exc}")
        finally:
            db.close()

    def _get_history(self, conversation_id: str, limit: int) -> List[Turn]:
        if limit <= 0:
            return []
        db = self.session_factory()
        try:
            rows = (
                db.query(ConversationTurn)
                .filter(ConversationTurn.conversation_id == conversation_id)
                .order_by(ConversationTurn.timestamp.desc(), ConversationTurn.seq.desc())
                .limit(limit)
                .all()
            )
            return sorted((_turn_from_row(row) for row in rows), key=Turn.sort_key)
        except SQLAlchemyError as exc:
            raise Unavailable(f"History lookup failed: {exc}")
        finally:
            db.close()

    def _get_flagged_history(self, conversation_id: str) -> List[Turn]:
        db = self.session_factory()
        try:
            rows = (
                db.query(ConversationTurn)
                .filter(ConversationTurn.conversation_id == conversation_id)
                .order_by(ConversationTurn.timestamp, ConversationTurn.seq)
                .all()
            )
            # JSON containment is not portable; filter flags in Python
            return [turn for turn in (_turn_from_row(row) for row in rows) if turn.flagged]
        except SQLAlchemyError as exc:
            raise Unavailable(f"Flagged history lookup failed: {exc}")
        finally:
            db.close()

    def _append_turn(self, conversation_id: str, turn: Turn) -> Turn:
        db = self.session_factory()
        try:
            row = ConversationTurn(
                conversation_id=conversation_id,
                speaker=turn.speaker.value,
                text=turn.text,
                channel=turn.channel,
                timestamp=turn.timestamp,
                flags=sorted(flag.value for flag in turn.flags),
            )
            db.add(row)
            db.commit()
            return turn.model_copy(update={"seq": row.seq})
        except SQLAlchemyError as exc:
            db.rollback()
            raise Unavailable(f"Turn append failed: {exc}")
        finally:
            db.close()


def merge_history(recent: List[Turn], flagged: List[Turn]) -> tuple:
    """Recent window plus older flagged turns, deduplicated by ``seq``, canonical order."""
    by_seq = {turn.seq: turn for turn in flagged}
    by_seq.update({turn.seq: turn for turn in recent})
    return tuple(sorted(by_seq.values(), key=Turn.sort_key))


class ContextAssembler:
    def __init__(
        self,
        repository: ContextRepository,
        history_limit: int = 10,
        timeout_seconds: float = 3.0,
        max_attempts: int = 2,
        backoff_seconds: float = 0.1,
        sleep=asyncio.sleep,
    ):
        self.repository = repository
        self.history_limit = history_limit
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep

    async def _call(self, what: str, factory):
        """Run one lookup with a timeout, retrying transient failures."""
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await asyncio.wait_for(factory(), timeout=self.timeout_seconds)
            except NotFound as exc:
                raise ContextUnavailable(str(exc), "context_not_found")
            except (Unavailable, asyncio.TimeoutError) as exc:
                last_error = exc
                logger.warning(
                    "Context lookup failed",
                    extra={
                        "context": {
                            "lookup": what,
                            "attempt": attempt,
                            "max_attempts": self.max_attempts,
                            "error": str(exc) or type(exc).__name__,
                        }
                    },
                )
                if attempt < self.max_attempts:
                    await self.sleep(self.backoff_seconds * 2 ** (attempt - 1))
        raise ContextUnavailable(f"{what} lookup unavailable: {last_error or 'timeout'}")

    async def assemble(self, property_id: str, conversation_id: str) -> ConversationContext:
        """Runs the four lookups concurrently; the first failure, in lookup order, wins."""
        results = await asyncio.gather(
            self._call("property", lambda: self.repository.get_property(property_id)),
            self._call("booking", lambda: self.repository.get_booking(conversation_id)),
            self._call("history", lambda: self.repository.get_history(conversation_id, self.history_limit)),
            self._call("flagged_history", lambda: self.repository.get_flagged_history(conversation_id)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        prop, booking, recent, flagged = results

        history = merge_history(recent, flagged)
        flags = frozenset(flag for turn in history for flag in turn.flags)
        return ConversationContext(
            property=prop,
            booking=booking,
            history=history,
            escalation_flags=flags,
        )

    async def record(self, conversation_id: str, turn: Turn) -> Optional[Turn]:
        """Best-effort history write; a failed append is logged, not raised."""
        try:
            return await asyncio.wait_for(
                self.repository.append_turn(conversation_id, turn),
                timeout=self.timeout_seconds,
            )
        except (RepositoryError, asyncio.TimeoutError) as exc:
            logger.warning(
                "Failed to record turn",
                extra={"context": {"conversation_id": conversation_id, "speaker": turn.speaker.value, "error": str(exc)}},
            )
            return None
