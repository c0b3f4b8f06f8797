"""Authoritative per-conversation state and sequencing.

Every inbound message is admitted as a ``Ticket`` carrying a per-conversation
sequence number and the escalation epoch it was admitted under. Outbound side
effects run inside ``ordered(ticket)`` so they commit in arrival order.
Escalation does not wait its turn: it commits immediately, bumps the epoch and
cancels in-flight composer tasks, which turns every older ticket stale.
"""

import asyncio
from collections import OrderedDict
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Optional, Set

from cohost.logging_config import get_logger
from cohost.schemas.message import GuestMessage
from cohost.services.result import Result
from cohost.services.state_machine import (
    ConversationState,
    InvalidTransitionError,
    await_response,
    complete_response,
    escalate,
    human_resolve,
    reopen,
)

logger = get_logger("state_service")


@dataclass(frozen=True)
class Ticket:
    conversation_id: str
    seq: int
    epoch: int
    message: GuestMessage
    escalated: bool = False  # admitted while a human already owns the conversation


@dataclass(frozen=True)
class ConversationSnapshot:
    conversation_id: str
    state: ConversationState
    pending: int
    epoch: int
    escalation_reasons: FrozenSet[str]
    updated_at: Optional[datetime]


@dataclass
class _Slot:
    state: ConversationState = ConversationState.IDLE
    epoch: int = 0
    next_seq: int = 0
    next_commit: int = 0
    pending: Set[int] = field(default_factory=set)
    released: Set[int] = field(default_factory=set)
    tasks: Dict[int, Set[asyncio.Task]] = field(default_factory=dict)
    escalation_reasons: FrozenSet[str] = frozenset()
    updated_at: Optional[datetime] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    turn: Optional[asyncio.Condition] = None
    users: int = 0

    def __post_init__(self) -> None:
        self.turn = asyncio.Condition(self.lock)

    @property
    def evictable(self) -> bool:
        """Nothing in flight and nothing a human still owns."""
        return (
            self.users == 0
            and not self.pending
            and not self.released
            and not self.tasks
            and self.state in (ConversationState.IDLE, ConversationState.RESOLVED)
        )


class ConversationStateService:
    """Owns exactly one ``ConversationState`` per conversation id.

    Quiet conversations are forgotten least-recently-used first once more than
    ``max_conversations`` are tracked. Escalated or busy ones are always kept,
    so the bound is soft.
    """

    def __init__(self, max_conversations: int = 10_000):
        self.max_conversations = max(1, max_conversations)
        self._slots: "OrderedDict[str, _Slot]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._slots)

    def _slot(self, conversation_id: str) -> _Slot:
        slot = self._slots.get(conversation_id)
        if slot is None:
            self._evict_quiet()
            slot = _Slot()
            self._slots[conversation_id] = slot
        else:
            self._slots.move_to_end(conversation_id)
        return slot

    @contextmanager
    def _holding(self, conversation_id: str):
        slot = self._slot(conversation_id)
        slot.users += 1
        try:
            yield slot
        finally:
            slot.users -= 1

    def _evict_quiet(self) -> None:
        if len(self._slots) < self.max_conversations:
            return
        evicted = 0
        for conversation_id in list(self._slots):
            if len(self._slots) < self.max_conversations:
                break
            if self._slots[conversation_id].evictable:
                del self._slots[conversation_id]
                evicted += 1
        if evicted:
            logger.debug(
                "Quiet conversations evicted",
                extra={"context": {"evicted": evicted, "tracked": len(self._slots)}},
            )

    def _set_state(self, slot: _Slot, new_state: ConversationState) -> None:
        slot.state = new_state
        slot.updated_at = datetime.now(timezone.utc)

    async def admit(self, message: GuestMessage) -> Ticket:
        """Serialization point for an inbound message."""
        with self._holding(message.conversation_id) as slot:
            async with slot.lock:
                seq = slot.next_seq
                slot.next_seq += 1
                slot.pending.add(seq)
                ticket = Ticket(
                    conversation_id=message.conversation_id,
                    seq=seq,
                    epoch=slot.epoch,
                    message=message,
                    escalated=slot.state == ConversationState.ESCALATED,
                )

        logger.debug(
            "Message admitted",
            extra={
                "context": {
                    "conversation_id": ticket.conversation_id,
                    "seq": ticket.seq,
                    "epoch": ticket.epoch,
                    "state": slot.state.value,
                }
            },
        )
        return ticket

    async def begin_response(self, ticket: Ticket) -> Result[ConversationState]:
        """The message will get an automated reply: move to awaiting_response."""
        with self._holding(ticket.conversation_id) as slot:
            async with slot.lock:
                if ticket.epoch != slot.epoch or slot.state == ConversationState.ESCALATED:
                    return self._stale(ticket, slot, "begin_response")
                if slot.state == ConversationState.RESOLVED:
                    self._set_state(slot, reopen(slot.state))
                    logger.info(
                        "Conversation reopened",
                        extra={"context": {"conversation_id": ticket.conversation_id}},
                    )
                if slot.state == ConversationState.IDLE:
                    self._set_state(slot, await_response(slot.state))
                return Result.success(slot.state)

    def is_current(self, ticket: Ticket) -> bool:
        """False once the conversation escalated after this ticket was admitted."""
        slot = self._slots.get(ticket.conversation_id)
        if slot is None:
            return False
        return slot.epoch == ticket.epoch and slot.state != ConversationState.ESCALATED

    def track(self, ticket: Ticket, task: asyncio.Task) -> None:
        """Register an in-flight composer task so escalation can cancel it."""
        slot = self._slot(ticket.conversation_id)
        slot.tasks.setdefault(ticket.seq, set()).add(task)

    @asynccontextmanager
    async def ordered(self, ticket: Ticket):
        """Wait until every earlier ticket of the conversation has finished, then hold the turn."""
        with self._holding(ticket.conversation_id) as slot:
            async with slot.turn:
                await slot.turn.wait_for(lambda: slot.next_commit == ticket.seq)
        try:
            yield
        finally:
            await self.release(ticket)

    async def release(self, ticket: Ticket) -> None:
        """Mark the ticket finished and let the next one in line proceed. Idempotent."""
        if ticket.conversation_id not in self._slots:
            return
        with self._holding(ticket.conversation_id) as slot:
            async with slot.turn:
                if ticket.seq < slot.next_commit or ticket.seq in slot.released:
                    return
                slot.released.add(ticket.seq)
                slot.pending.discard(ticket.seq)
                slot.tasks.pop(ticket.seq, None)
                while slot.next_commit in slot.released:
                    slot.released.discard(slot.next_commit)
                    slot.next_commit += 1
                slot.turn.notify_all()

    async def complete(self, ticket: Ticket) -> Result[ConversationState]:
        """Commit a delivered automated reply."""
        with self._holding(ticket.conversation_id) as slot:
            async with slot.lock:
                slot.pending.discard(ticket.seq)
                if ticket.epoch != slot.epoch or slot.state != ConversationState.AWAITING_RESPONSE:
                    return self._stale(ticket, slot, "complete")
                if slot.pending:
                    return Result.success(slot.state)
                self._set_state(slot, complete_response(slot.state))
                return Result.success(slot.state)

    async def escalate(
        self,
        conversation_id: str,
        reasons: FrozenSet[str] = frozenset(),
    ) -> Result[ConversationState]:
        """Commit escalation immediately, superseding every in-flight automated reply."""
        with self._holding(conversation_id) as slot:
            async with slot.lock:
                old_state = slot.state
                if slot.state == ConversationState.ESCALATED:
                    slot.escalation_reasons = slot.escalation_reasons | frozenset(reasons)
                    return Result.success(slot.state, newly_escalated=False)
                if slot.state == ConversationState.RESOLVED:
                    self._set_state(slot, reopen(slot.state))
                self._set_state(slot, escalate(slot.state))
                slot.escalation_reasons = frozenset(reasons)
                slot.epoch += 1

                cancelled = 0
                for tasks in slot.tasks.values():
                    for task in tasks:
                        if not task.done():
                            task.cancel()
                            cancelled += 1

        logger.info(
            "Conversation escalated",
            extra={
                "context": {
                    "conversation_id": conversation_id,
                    "old_state": old_state.value,
                    "reasons": sorted(reasons),
                    "cancelled_tasks": cancelled,
                    "epoch": slot.epoch,
                }
            },
        )
        return Result.success(slot.state, newly_escalated=True)

    async def resolve(self, conversation_id: str) -> Result[ConversationState]:
        """Human closes the conversation: escalated → resolved."""
        with self._holding(conversation_id) as slot:
            async with slot.lock:
                try:
                    new_state = human_resolve(slot.state)
                except InvalidTransitionError:
                    return Result.failure(f"Cannot resolve from state {slot.state.value}", "invalid_state")
                self._set_state(slot, new_state)
                slot.escalation_reasons = frozenset()
        logger.info("Conversation resolved by human", extra={"context": {"conversation_id": conversation_id}})
        return Result.success(new_state)

    def snapshot(self, conversation_id: str) -> ConversationSnapshot:
        slot = self._slots.get(conversation_id) or _Slot()
        return ConversationSnapshot(
            conversation_id=conversation_id,
            state=slot.state,
            pending=len(slot.pending),
            epoch=slot.epoch,
            escalation_reasons=slot.escalation_reasons,
            updated_at=slot.updated_at,
        )

    def _stale(self, ticket: Ticket, slot: _Slot, action: str) -> Result[ConversationState]:
        logger.warning(
            "StaleTransition",
            extra={
                "context": {
                    "conversation_id": ticket.conversation_id,
                    "seq": ticket.seq,
                    "ticket_epoch": ticket.epoch,
                    "epoch": slot.epoch,
                    "state": slot.state.value,
                    "action": action,
                }
            },
        )
        return Result.failure(
            f"Discarded {action} for superseded ticket {ticket.seq} (state {slot.state.value})",
            "stale_transition",
            state=slot.state.value,
        )
