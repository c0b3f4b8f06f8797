"""Per-message flow: normalize, assemble context, classify, then either
compose-and-send or escalate.

Escalation always wins. It is committed the moment it is decided, while replies
for the same conversation only commit in arrival order and only if no
escalation happened after their message was admitted.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from cohost.database import SessionLocal
from cohost.logging_config import conversation_logger, get_logger
from cohost.schemas.brand_voice import BrandVoiceConfig
from cohost.schemas.context import ConversationContext
from cohost.schemas.message import Flag, GuestMessage, SenderRole, Speaker, Turn
from cohost.schemas.webhook import EventType, InboundWebhook
from cohost.services.cache_service import ResponseCache, ResponseCandidate
from cohost.services.classifier_service import EscalationClassifier, EscalationSignal, ReasonCode, Severity
from cohost.services.clock import SystemClock
from cohost.services.composer_service import CompositionPlan, ResponseComposer
from cohost.services.context_service import ContextAssembler, SqlContextRepository
from cohost.services.dispatch_service import ChannelApiAdapter, DeliveryReceipt, DispatchGateway, build_idempotency_key
from cohost.services.errors import (
    CompositionError,
    ContextUnavailable,
    DispatchError,
    DuplicateEvent,
    NormalizationError,
    PolicyViolation,
    PropertyBusy,
)
from cohost.services.escalation_service import HumanNotifier, LoggingEscalationNotifier, TelegramEscalationNotifier
from cohost.services.ingestion_service import IngestionNormalizer, SqlEventLedger
from cohost.services.llm import OpenAIProvider
from cohost.services.sentiment_service import LexiconSentimentScorer, LLMSentimentScorer
from cohost.services.state_machine import ConversationState
from cohost.services.state_service import ConversationStateService, Ticket
from cohost.services.telegram_service import TelegramService
from cohost.services.template_service import load_brand_voice, load_templates

logger = get_logger("orchestrator_service")


@dataclass(frozen=True)
class ProcessingOutcome:
    status: str  # processed, duplicate, escalated, ignored, failed
    conversation_id: Optional[str] = None
    state: Optional[ConversationState] = None
    signal: Optional[EscalationSignal] = None
    receipt: Optional[DeliveryReceipt] = None
    cache_hit: bool = False
    message: Optional[str] = None


class PropertyGate:
    """Bounds concurrent processing per property and how many may queue behind it."""

    def __init__(self, max_concurrency: int = 4, queue_depth: int = 32):
        self.max_concurrency = max(1, max_concurrency)
        self.queue_depth = max(0, queue_depth)
        self._semaphores: Dict[str, asyncio.Semaphore] = {}
        self._waiting: Dict[str, int] = defaultdict(int)

    def waiting(self, property_id: str) -> int:
        return self._waiting.get(property_id, 0)

    @asynccontextmanager
    async def slot(self, property_id: str):
        semaphore = self._semaphores.get(property_id)
        if semaphore is None:
            semaphore = asyncio.Semaphore(self.max_concurrency)
            self._semaphores[property_id] = semaphore

        if semaphore.locked():
            if self._waiting[property_id] >= self.queue_depth:
                raise PropertyBusy(f"Property {property_id} has {self._waiting[property_id]} messages queued")
            self._waiting[property_id] += 1
            try:
                await semaphore.acquire()
            finally:
                self._waiting[property_id] -= 1
        else:
            await semaphore.acquire()

        try:
            yield
        finally:
            semaphore.release()


def turn_flags(signal: EscalationSignal, escalated: bool = False) -> FrozenSet[Flag]:
    flags = set()
    if signal.reasons & {ReasonCode.SAFETY, ReasonCode.SECURITY}:
        flags.add(Flag.SAFETY)
    if signal.reasons & {ReasonCode.COMPLAINT, ReasonCode.NEGATIVE_SENTIMENT}:
        flags.add(Flag.COMPLAINT)
    if ReasonCode.POLICY_COMMITMENT in signal.reasons:
        flags.add(Flag.POLICY)
    if escalated or signal.forces_escalation:
        flags.add(Flag.ESCALATED)
    return frozenset(flags)


class ConversationOrchestrator:
    def __init__(
        self,
        normalizer: IngestionNormalizer,
        assembler: ContextAssembler,
        classifier: EscalationClassifier,
        cache: ResponseCache,
        composer: ResponseComposer,
        gateway: DispatchGateway,
        state: ConversationStateService,
        notifier: HumanNotifier,
        gate: Optional[PropertyGate] = None,
        voice: Optional[BrandVoiceConfig] = None,
        send_holding_message: bool = True,
        clock=None,
    ):
        self.normalizer = normalizer
        self.assembler = assembler
        self.classifier = classifier
        self.cache = cache
        self.composer = composer
        self.gateway = gateway
        self.state = state
        self.notifier = notifier
        self.gate = gate or PropertyGate()
        self.voice = voice or composer.voice
        self.send_holding_message = send_holding_message
        self.clock = clock or SystemClock()

    # --- Entry points -------------------------------------------------------

    async def handle_webhook(self, envelope: InboundWebhook) -> ProcessingOutcome:
        """Raises ``NormalizationError`` for bad input and ``PropertyBusy`` under overload.

        An event that was shed or failed is un-claimed, so the platform's redelivery
        is processed instead of being dropped as a duplicate.
        """
        if envelope.event_type == EventType.BOOKING_UPDATE:
            return await self.handle_booking_update(envelope)

        try:
            message = await self.normalizer.normalize(envelope)
        except DuplicateEvent as exc:
            return ProcessingOutcome(status="duplicate", conversation_id=envelope.conversation_ref, message=exc.message)

        if message.sender_role != SenderRole.GUEST:
            await self._record(message, Speaker.HUMAN if message.sender_role == SenderRole.HOST else None)
            return ProcessingOutcome(
                status="ignored",
                conversation_id=message.conversation_id,
                state=self.state.snapshot(message.conversation_id).state,
                message=f"{message.sender_role.value} message recorded",
            )

        try:
            async with self.gate.slot(message.property_id):
                outcome = await self.process(message)
        except PropertyBusy:
            await self.normalizer.release(envelope)
            raise
        if outcome.status == "failed":
            await self.normalizer.release(envelope)
        return outcome

    async def handle_booking_update(self, envelope: InboundWebhook) -> ProcessingOutcome:
        """Booking or property data changed: drop that property's cached replies."""
        self.normalizer.parse_platform(envelope)
        property_id = envelope.property_ref or envelope.payload.get("property_id") or envelope.payload.get("listingMapId")
        if not property_id:
            raise NormalizationError("booking_update without property reference", "missing_property")
        try:
            await self.normalizer.claim(envelope)
        except DuplicateEvent as exc:
            return ProcessingOutcome(status="duplicate", message=exc.message)

        evicted = self.cache.invalidate(property_id=str(property_id))
        return ProcessingOutcome(status="processed", message=f"Invalidated {evicted} cached replies")

    # --- Processing ---------------------------------------------------------

    async def process(self, message: GuestMessage) -> ProcessingOutcome:
        log = conversation_logger("orchestrator_service", message.conversation_id, property_id=message.property_id)
        ticket = await self.state.admit(message)
        try:
            return await self._process(ticket, log)
        except Exception:
            log.exception("Unexpected processing error", context={"seq": ticket.seq})
            return ProcessingOutcome(
                status="failed",
                conversation_id=message.conversation_id,
                state=self.state.snapshot(message.conversation_id).state,
                message="Internal error",
            )
        finally:
            await self.state.release(ticket)

    async def _process(self, ticket: Ticket, log) -> ProcessingOutcome:
        message = ticket.message
        try:
            context = await self.assembler.assemble(message.property_id, message.conversation_id)
        except ContextUnavailable as exc:
            log.warning("Context unavailable, escalating", context={"code": exc.code, "error": exc.message})
            signal = EscalationSignal.forced(ReasonCode.CONTEXT_UNAVAILABLE)
            await self._record(message, Speaker.GUEST, flags=turn_flags(signal))
            return await self._escalate(ticket, signal, None)

        signal = await self.classifier.classify(message, context)
        await self._record(message, Speaker.GUEST, flags=turn_flags(signal, escalated=ticket.escalated))

        if ticket.escalated:
            # a human already owns the conversation: no automated reply, just keep them informed
            snapshot = self._forward_to_human(message, signal, context)
            return ProcessingOutcome(
                status="escalated",
                conversation_id=message.conversation_id,
                state=snapshot.state,
                signal=signal,
                message="Conversation is with a human",
            )

        if signal.forces_escalation:
            return await self._escalate(ticket, signal, context)

        if signal.severity == Severity.NOTICE:
            # hybrid: reply automatically, and let a human know
            self.notifier.notify(
                message.conversation_id,
                signal,
                self.state.snapshot(message.conversation_id),
                message=message,
                property_name=context.property.name,
            )

        return await self._respond(ticket, signal, context, log)

    async def _respond(self, ticket: Ticket, signal, context: ConversationContext, log) -> ProcessingOutcome:
        message = ticket.message
        started = await self.state.begin_response(ticket)
        if not started.ok:
            return self._superseded(ticket, signal, context)

        try:
            plan = self.composer.plan(message, context, signal)
        except CompositionError as exc:
            log.warning("Composition planning failed", context={"code": exc.code})
            return await self._escalate(ticket, EscalationSignal.forced(ReasonCode.COMPOSITION_FAILED), context)

        task = asyncio.create_task(self._compose(ticket, plan))
        self.state.track(ticket, task)
        try:
            await asyncio.wait({task})
        finally:
            if not task.done():
                task.cancel()

        if task.cancelled():
            log.info("Reply superseded by escalation", context={"seq": ticket.seq})
            return self._superseded(ticket, signal, context)

        error = task.exception()
        if isinstance(error, PolicyViolation):
            log.warning("Reply blocked by policy guard", context={"topics": error.topics})
            return await self._escalate(ticket, EscalationSignal.forced(ReasonCode.POLICY_COMMITMENT), context)
        if isinstance(error, CompositionError):
            log.warning("Composition failed", context={"code": error.code, "error": error.message})
            return await self._escalate(ticket, EscalationSignal.forced(ReasonCode.COMPOSITION_FAILED), context)
        if error is not None:
            raise error

        candidate, cache_hit = task.result()

        async with self.state.ordered(ticket):
            if not self.state.is_current(ticket):
                await self.state.complete(ticket)
                return self._superseded(ticket, signal, context)

            try:
                receipt = await self.gateway.send(
                    message.platform,
                    message.conversation_id,
                    candidate.text,
                    idempotency_key=build_idempotency_key(message.conversation_id, message.platform_event_id, "reply"),
                )
            except DispatchError as exc:
                log.error("Reply delivery failed", context={"code": exc.code, "attempts": exc.attempts})
                return await self._escalate(
                    ticket,
                    EscalationSignal.forced(ReasonCode.DELIVERY_FAILED),
                    context,
                    holding_message=False,
                )

            result = await self.state.complete(ticket)
            await self._record_reply(message, candidate)

        log.info(
            "Reply sent",
            context={
                "seq": ticket.seq,
                "cache_hit": cache_hit,
                "template": candidate.source_template_id,
                "generated": candidate.generated_by_model is not None,
                "attempts": receipt.attempts,
            },
        )
        return ProcessingOutcome(
            status="processed",
            conversation_id=message.conversation_id,
            state=result.value if result.ok else self.state.snapshot(message.conversation_id).state,
            signal=signal,
            receipt=receipt,
            cache_hit=cache_hit,
        )

    async def _compose(self, ticket: Ticket, plan: CompositionPlan):
        body, hit = await self.cache.get_or_compute(
            plan.fingerprint,
            lambda: self.composer.realize(plan),
            ttl=plan.ttl,
            property_id=plan.context.property.property_id,
            template_id=plan.template_id,
            should_store=lambda: self.state.is_current(ticket),
        )
        return self.composer.finalize(plan, body), hit

    def _superseded(self, ticket: Ticket, signal: EscalationSignal, context: ConversationContext) -> ProcessingOutcome:
        # the guest still asked something: the human now owning the thread has to see it
        snapshot = self._forward_to_human(ticket.message, signal, context)
        return ProcessingOutcome(
            status="escalated",
            conversation_id=ticket.conversation_id,
            state=snapshot.state,
            signal=signal,
            message="Reply discarded: conversation escalated",
        )

    def _forward_to_human(self, message: GuestMessage, signal: EscalationSignal, context: ConversationContext):
        """Notify about a message that arrived for, or ended up with, an escalated conversation."""
        snapshot = self.state.snapshot(message.conversation_id)
        follow_up = signal
        if not signal.reasons:
            reasons = frozenset(ReasonCode(reason) for reason in snapshot.escalation_reasons)
            follow_up = EscalationSignal(severity=Severity.NOTICE, reasons=reasons)
        self.notifier.notify(
            message.conversation_id, follow_up, snapshot, message=message, property_name=context.property.name
        )
        return snapshot

    async def _escalate(
        self,
        ticket: Ticket,
        signal: EscalationSignal,
        context: Optional[ConversationContext],
        holding_message: bool = True,
    ) -> ProcessingOutcome:
        message = ticket.message
        result = await self.state.escalate(message.conversation_id, frozenset(signal.reason_values))
        snapshot = self.state.snapshot(message.conversation_id)

        self.notifier.notify(
            message.conversation_id,
            signal,
            snapshot,
            message=message,
            property_name=context.property.name if context else None,
        )

        if holding_message and self.send_holding_message and result.details.get("newly_escalated"):
            await self._send_holding_message(message)

        return ProcessingOutcome(
            status="escalated",
            conversation_id=message.conversation_id,
            state=snapshot.state,
            signal=signal,
            message=", ".join(signal.reason_values),
        )

    async def _send_holding_message(self, message: GuestMessage) -> None:
        try:
            await self.gateway.send(
                message.platform,
                message.conversation_id,
                self.voice.holding_message,
                idempotency_key=build_idempotency_key(message.conversation_id, message.platform_event_id, "holding"),
            )
        except DispatchError as exc:
            logger.warning(
                "Holding message not delivered",
                extra={"context": {"conversation_id": message.conversation_id, "code": exc.code}},
            )
            return
        await self._record_reply(message, ResponseCandidate(text=self.voice.holding_message))

    # --- History ------------------------------------------------------------

    async def _record(self, message: GuestMessage, speaker: Optional[Speaker], flags: FrozenSet[Flag] = frozenset()):
        if speaker is None:
            return None
        turn = Turn(
            speaker=speaker,
            text=message.raw_text,
            timestamp=message.received_at,
            channel=message.platform.value,
            flags=flags,
        )
        return await self.assembler.record(message.conversation_id, turn)

    async def _record_reply(self, message: GuestMessage, candidate: ResponseCandidate):
        turn = Turn(
            speaker=Speaker.AGENT,
            text=candidate.text,
            timestamp=self.clock.utcnow(),
            channel=message.platform.value,
        )
        return await self.assembler.record(message.conversation_id, turn)


@dataclass
class Engine:
    """Everything the HTTP layer needs, built once per process."""

    orchestrator: ConversationOrchestrator
    state: ConversationStateService
    cache: ResponseCache
    notifier: HumanNotifier
    gateway: DispatchGateway
    backend: object

    async def aclose(self) -> None:
        await self.notifier.aclose()
        await self.gateway.aclose()
        await self.backend.aclose()


def build_engine(
    settings,
    *,
    session_factory=None,
    repository=None,
    ledger=None,
    backend=None,
    adapters=None,
    notifier=None,
) -> Engine:
    """Wire the engine from settings. Keyword overrides replace the external collaborators."""
    session_factory = session_factory or SessionLocal
    voice = load_brand_voice(settings.brand_voice_path)
    templates = load_templates(settings.templates_path, voice)

    if backend is None:
        if not settings.openai_api_key:
            logger.warning("OPENAI_API_KEY not set: free-form replies will escalate")
        backend = OpenAIProvider(
            settings.openai_api_key or "",
            default_model=settings.openai_model,
            timeout_seconds=settings.generation_timeout_seconds,
        )

    if adapters is None:
        adapters = {
            platform: ChannelApiAdapter(
                base_url,
                token=settings.platform_api_tokens.get(platform),
                timeout_seconds=settings.dispatch_timeout_seconds,
            )
            for platform, base_url in settings.platform_api_base_urls.items()
        }

    if notifier is None:
        if settings.telegram_bot_token and settings.telegram_chat_id:
            notifier = TelegramEscalationNotifier(TelegramService(settings.telegram_bot_token), settings.telegram_chat_id)
        else:
            notifier = LoggingEscalationNotifier()

    if settings.sentiment_scorer == "llm":
        scorer = LLMSentimentScorer(backend)
    else:
        scorer = LexiconSentimentScorer()

    state = ConversationStateService(max_conversations=settings.max_tracked_conversations)
    cache = ResponseCache(max_entries=settings.cache_max_entries, default_ttl=settings.cache_default_ttl_seconds)
    gateway = DispatchGateway(
        adapters,
        max_attempts=settings.dispatch_max_attempts,
        backoff_seconds=settings.dispatch_backoff_seconds,
        backoff_max_seconds=settings.dispatch_backoff_max_seconds,
        timeout_seconds=settings.dispatch_timeout_seconds,
    )
    human = HumanNotifier(notifier)
    composer = ResponseComposer(
        templates,
        voice,
        backend,
        intent_confidence_threshold=settings.intent_confidence_threshold,
        generation_timeout_seconds=settings.generation_timeout_seconds,
        generation_max_attempts=settings.generation_max_attempts,
        generation_backoff_seconds=settings.generation_backoff_seconds,
    )
    orchestrator = ConversationOrchestrator(
        normalizer=IngestionNormalizer(ledger or SqlEventLedger(session_factory)),
        assembler=ContextAssembler(
            repository or SqlContextRepository(session_factory),
            history_limit=settings.history_limit,
            timeout_seconds=settings.context_timeout_seconds,
            max_attempts=settings.context_max_attempts,
        ),
        classifier=EscalationClassifier(
            scorer=scorer,
            sentiment_threshold=settings.sentiment_threshold,
            sentiment_timeout_seconds=settings.sentiment_timeout_seconds,
        ),
        cache=cache,
        composer=composer,
        gateway=gateway,
        state=state,
        notifier=human,
        gate=PropertyGate(settings.property_max_concurrency, settings.property_queue_depth),
        voice=voice,
        send_holding_message=settings.send_holding_message,
    )
    logger.info(
        "Engine built",
        extra={
            "context": {
                "platforms": sorted(adapters),
                "brand_voice": voice.version,
                "templates": templates.version,
                "notifier": type(notifier).__name__,
            }
        },
    )
    return Engine(
        orchestrator=orchestrator,
        state=state,
        cache=cache,
        notifier=human,
        gateway=gateway,
        backend=backend,
    )
