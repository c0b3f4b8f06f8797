"""Escalation classifier.

Rules dominate: an urgent or emergency rule match decides the outcome no matter
what the sentiment score says. Sentiment can only raise a message to ``notice``.
"""

import asyncio
import re
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import FrozenSet, Iterable, Optional, Pattern, Tuple

from cohost.logging_config import get_logger
from cohost.schemas.context import ConversationContext
from cohost.schemas.message import Flag, GuestMessage
from cohost.services.sentiment_service import SentimentScorer

logger = get_logger("classifier_service")


class Severity(IntEnum):
    NONE = 0
    NOTICE = 1
    URGENT = 2
    EMERGENCY = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    @property
    def forces_escalation(self) -> bool:
        return self >= Severity.URGENT


class ReasonCode(str, Enum):
    SAFETY = "safety"
    SECURITY = "security"
    DAMAGE = "damage"
    REFUND = "refund"
    LEGAL = "legal"
    ACCESS = "access"
    HUMAN_REQUEST = "human_request"
    COMPLAINT = "complaint"
    NEGATIVE_SENTIMENT = "negative_sentiment"
    CONTEXT_UNAVAILABLE = "context_unavailable"
    POLICY_COMMITMENT = "policy_commitment"
    DELIVERY_FAILED = "delivery_failed"
    COMPOSITION_FAILED = "composition_failed"
    FLAGGED_HISTORY = "flagged_history"


@dataclass(frozen=True)
class EscalationSignal:
    severity: Severity
    reasons: FrozenSet[ReasonCode] = frozenset()
    confidence: float = 1.0

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")

    @property
    def forces_escalation(self) -> bool:
        return self.severity.forces_escalation

    @property
    def reason_values(self) -> list:
        return sorted(reason.value for reason in self.reasons)

    @classmethod
    def forced(cls, reason: ReasonCode, severity: Severity = Severity.URGENT) -> "EscalationSignal":
        """Escalation raised by the engine itself rather than by message content."""
        return cls(severity=severity, reasons=frozenset({reason}), confidence=1.0)


NO_ESCALATION = EscalationSignal(severity=Severity.NONE, confidence=1.0)


@dataclass(frozen=True)
class EscalationRule:
    reason: ReasonCode
    severity: Severity
    pattern: Pattern
    confidence: float = 0.9


def _rule(reason: ReasonCode, severity: Severity, pattern: str, confidence: float = 0.9) -> EscalationRule:
    return EscalationRule(reason=reason, severity=severity, pattern=re.compile(pattern), confidence=confidence)


DEFAULT_RULES: Tuple[EscalationRule, ...] = (
    _rule(
        ReasonCode.SAFETY,
        Severity.EMERGENCY,
        r"\b(gas (leak|smell)|smell(s|ing)? (of )?(gas|smoke|burning)|(on|caught) fire|there(['’]s| is) (a )?fire\b(?! (pit|extinguisher|blanket|wood))"
        r"|fire (alarm (is )?going off|is spreading)|(kitchen|house|electrical|grease) fire|there(['’]s| is) smoke"
        r"|smoke (is )?(coming|everywhere|filling)|full of smoke|smoke alarm (is )?going off|smoking outlet"
        r"|carbon monoxide|co alarm|co detector|flood(ed|ing)?|water everywhere)\b",
        0.95,
    ),
    _rule(
        ReasonCode.SAFETY,
        Severity.EMERGENCY,
        r"\b(injur(ed|y)|bleeding|ambulance|unconscious|fell down|broke (my|his|her) (arm|leg))\b",
        0.9,
    ),
    _rule(
        ReasonCode.SECURITY,
        Severity.EMERGENCY,
        r"\b(intruder|break[- ]in|broke in|someone (is )?in the (house|apartment|unit)|stranger inside)\b",
        0.95,
    ),
    _rule(
        ReasonCode.ACCESS,
        Severity.URGENT,
        r"\b(locked out|lock ?out|can(no|')?t get in|(door )?code (is )?(not|isn't|doesn't|does not) work(ing)?|key ?(box|safe) (is )?(empty|broken))\b",
        0.85,
    ),
    _rule(
        ReasonCode.DAMAGE,
        Severity.URGENT,
        r"\b(broken|broke|damaged|leak(ing|s)?|(ac|heating|heater|fridge|oven|shower|toilet|tv|washer|dryer) (is )?(not|isn't|stopped) working|no (hot )?water|no power|power (is )?out)\b",
        0.75,
    ),
    _rule(ReasonCode.REFUND, Severity.URGENT, r"\b(refund|chargeback|money back|compensat(e|ion))\b", 0.85),
    _rule(
        ReasonCode.LEGAL,
        Severity.URGENT,
        r"\b(lawyer|attorney|(will|gonna|going to|i['’]?ll) sue|sue (you|the host|your)|suing|legal action|small claims|report you)\b",
        0.9,
    ),
    _rule(
        ReasonCode.HUMAN_REQUEST,
        Severity.URGENT,
        r"\b((talk|speak) (to|with) (a |the )?(human|person|host|manager|owner|someone)|real person|call me)\b",
        0.9,
    ),
    _rule(
        ReasonCode.COMPLAINT,
        Severity.NOTICE,
        r"\b(dirty|filthy|unacceptable|disgusting|smells bad|stain(s|ed)?|not clean|bugs|cockroach(es)?)\b",
        0.7,
    ),
)


def normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").casefold()).strip()


FOLLOW_UP_FLAGS = frozenset({Flag.SAFETY, Flag.COMPLAINT})


def flagged_recently(context: ConversationContext, recent_turns: int) -> bool:
    if recent_turns <= 0 or not context.escalation_flags & FOLLOW_UP_FLAGS:
        return False
    return any(turn.flags & FOLLOW_UP_FLAGS for turn in context.history[-recent_turns:])


def evaluate(
    message: GuestMessage,
    context: ConversationContext,
    sentiment_score: Optional[float],
    *,
    rules: Iterable[EscalationRule] = DEFAULT_RULES,
    sentiment_threshold: float = 0.7,
    recent_turns: int = 6,
) -> EscalationSignal:
    """Pure decision: the same inputs always produce the same signal.

    A message that is calm on its own is still a ``notice`` when one of the last
    ``recent_turns`` turns was flagged for safety or a complaint.
    """
    text = normalize_text(message.raw_text)
    matched = [rule for rule in rules if rule.pattern.search(text)]
    high_sentiment = sentiment_score is not None and sentiment_score >= sentiment_threshold

    if matched:
        top = max(rule.severity for rule in matched)
        winners = [rule for rule in matched if rule.severity == top]
        reasons = {rule.reason for rule in winners}
        confidence = max(rule.confidence for rule in winners)
        if top == Severity.NOTICE and high_sentiment:
            reasons.add(ReasonCode.NEGATIVE_SENTIMENT)
            confidence = max(confidence, min(1.0, sentiment_score))
        return EscalationSignal(severity=top, reasons=frozenset(reasons), confidence=confidence)

    if high_sentiment:
        return EscalationSignal(
            severity=Severity.NOTICE,
            reasons=frozenset({ReasonCode.NEGATIVE_SENTIMENT}),
            confidence=min(1.0, sentiment_score),
        )

    if flagged_recently(context, recent_turns):
        return EscalationSignal(severity=Severity.NOTICE, reasons=frozenset({ReasonCode.FLAGGED_HISTORY}), confidence=0.6)

    if sentiment_score is None:
        return NO_ESCALATION
    return EscalationSignal(severity=Severity.NONE, confidence=round(1.0 - min(1.0, max(0.0, sentiment_score)), 3))


@dataclass
class EscalationClassifier:
    scorer: Optional[SentimentScorer] = None
    sentiment_threshold: float = 0.7
    sentiment_timeout_seconds: float = 1.5
    rules: Tuple[EscalationRule, ...] = field(default=DEFAULT_RULES)

    async def sentiment(self, message: GuestMessage, context: ConversationContext) -> Optional[float]:
        if self.scorer is None:
            return None
        try:
            return await asyncio.wait_for(
                self.scorer.score(message, context),
                timeout=self.sentiment_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Sentiment scorer timed out",
                extra={"context": {"conversation_id": message.conversation_id, "timeout": self.sentiment_timeout_seconds}},
            )
        except Exception as exc:
            logger.warning(
                "Sentiment scorer failed",
                extra={"context": {"conversation_id": message.conversation_id, "error": str(exc)}},
            )
        return None

    async def classify(self, message: GuestMessage, context: ConversationContext) -> EscalationSignal:
        score = await self.sentiment(message, context)
        signal = evaluate(
            message,
            context,
            score,
            rules=self.rules,
            sentiment_threshold=self.sentiment_threshold,
        )
        logger.info(
            "Message classified",
            extra={
                "context": {
                    "conversation_id": message.conversation_id,
                    "severity": signal.severity.label,
                    "reasons": signal.reason_values,
                    "confidence": signal.confidence,
                    "sentiment": score,
                }
            },
        )
        return signal
