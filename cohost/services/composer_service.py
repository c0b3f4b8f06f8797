"""Response composition.

``plan`` is synchronous and cheap: it picks the intent, the template and the
variables, and computes the cache fingerprint. ``realize`` does the expensive
part (template rendering or generation) and returns the reply body, which is
what the cache stores. ``finalize`` wraps the body in the brand voice for one
specific guest. The composer never sends anything.
"""

import asyncio
import random
import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

from cohost.logging_config import get_logger
from cohost.schemas.brand_voice import BrandVoiceConfig, TemplateDefinition, TemplateSet
from cohost.schemas.context import ConversationContext
from cohost.schemas.message import GuestMessage
from cohost.services.cache_service import ResponseCandidate, fingerprint
from cohost.services.classifier_service import EscalationSignal
from cohost.services.errors import CompositionError, MissingVariable, PolicyViolation
from cohost.services.intent_service import Intent, IntentMatch, classify_guest_intent, normalized_intent
from cohost.services.llm.base import GenerationError, GenerativeBackend, PromptContext
from cohost.services.template_service import frame, render, resolve_variables

logger = get_logger("composer_service")


class CompositionMode(str, Enum):
    TEMPLATE = "template"
    GENERATE = "generate"


@dataclass(frozen=True)
class CompositionPlan:
    message: GuestMessage
    context: ConversationContext
    intent: IntentMatch
    normalized_intent: str
    mode: CompositionMode
    fingerprint: str
    variables: Mapping[str, str]
    facts: Mapping[str, str]
    template: Optional[TemplateDefinition] = None
    rendered: Optional[str] = None
    missing: Tuple[str, ...] = ()

    @property
    def template_id(self) -> Optional[str]:
        return self.template.template_id if self.template else None

    @property
    def ttl(self) -> Optional[int]:
        return self.context.property.cache_ttl_seconds


# --- Policy guard -----------------------------------------------------------

BUILTIN_COMMITMENTS: Dict[str, str] = {
    "refunds": (
        r"\b(we('ll| will)|i('ll| will)) (issue|give|process|send)( you)? (a |an )?(full |partial )?refund\b"
        r"|\brefund (is|has been) (approved|issued|processed)\b"
        r"|\byou('ll| will) (get|receive) (a |your )?(full |partial )?refund\b"
    ),
    "discounts": (
        r"\b\d+ ?% (off|discount)\b|\bdiscount code\b"
        r"|\b(we('ll| will)|i('ll| will)|we can|i can) (give|offer)( you)? (a |an )?discount\b"
    ),
    "pets": r"\bpets? (are|is) (allowed|welcome|fine|ok(ay)?)\b|\byou can bring (your|a) (dog|cat|pet)\b",
    "parties": r"\b(parties|party|events?) (are|is) (allowed|fine|ok(ay)?)\b",
    "extra_guests": r"\b(extra|additional) guests? (are|is) (allowed|fine|ok(ay)?)\b",
    "early_check_in": (
        r"\bearly check[- ]?in (is )?(guaranteed|confirmed|approved)\b|\bguarantee (you )?(an )?early check[- ]?in\b"
    ),
    "late_check_out": (
        r"\blate check[- ]?out (is )?(guaranteed|confirmed|approved)\b|\bguarantee (you )?(a )?late check[- ]?out\b"
    ),
}


class PolicyGuard:
    """Rejects replies that promise something the property has not authorized."""

    def __init__(self, voice: BrandVoiceConfig, builtin: Optional[Dict[str, str]] = None):
        commitments = BUILTIN_COMMITMENTS if builtin is None else builtin
        self.builtin = {topic: re.compile(pattern, re.IGNORECASE) for topic, pattern in commitments.items()}
        self.custom = [re.compile(pattern, re.IGNORECASE) for pattern in voice.forbidden_commitments]

    @staticmethod
    def _allowed(topic: str, policies) -> bool:
        return topic in policies or f"{topic}_allowed" in policies

    def violations(self, text: str, context: ConversationContext) -> list:
        policies = set(context.property.policies)
        topics = [
            topic
            for topic, pattern in self.builtin.items()
            if pattern.search(text) and not self._allowed(topic, policies)
        ]
        topics.extend(f"brand:{pattern.pattern}" for pattern in self.custom if pattern.search(text))
        return topics

    def check(self, text: str, context: ConversationContext) -> str:
        topics = self.violations(text, context)
        if topics:
            raise PolicyViolation(topics, text)
        return text


# --- Composer ---------------------------------------------------------------

SYSTEM_PROMPT = """You are the virtual co-host for the short-term rental "{property_name}".
Answer the guest's message in a {tone} tone, in at most four sentences.
Use only the property facts below. Never promise refunds, discounts, exceptions to house rules,
early check-in or late check-out. Do not add a greeting or a sign-off.

Property facts:
{facts}"""

MISSING_FACTS_PROMPT = """
These details are NOT available: {missing}.
Do not guess or invent them. Say that the team will confirm them shortly."""


class ResponseComposer:
    def __init__(
        self,
        templates: TemplateSet,
        voice: BrandVoiceConfig,
        backend: GenerativeBackend,
        *,
        intent_confidence_threshold: float = 0.6,
        generation_timeout_seconds: float = 8.0,
        generation_max_attempts: int = 3,
        generation_backoff_seconds: float = 0.5,
        sleep=asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.templates = templates
        self.voice = voice
        self.backend = backend
        self.guard = PolicyGuard(voice)
        self.intent_confidence_threshold = intent_confidence_threshold
        self.generation_timeout_seconds = generation_timeout_seconds
        self.generation_max_attempts = max(1, generation_max_attempts)
        self.generation_backoff_seconds = generation_backoff_seconds
        self.sleep = sleep
        self.rng = rng or random.Random()

    @property
    def model_name(self) -> str:
        return getattr(self.backend, "default_model", type(self.backend).__name__)

    def plan(self, message: GuestMessage, context: ConversationContext, signal: EscalationSignal) -> CompositionPlan:
        if signal.forces_escalation:
            raise CompositionError(f"Refusing to compose for {signal.severity.label} signal", "not_composable")

        match = classify_guest_intent(message.raw_text)
        intent_key = normalized_intent(message.raw_text, match, self.intent_confidence_threshold)
        facts = resolve_variables(context)
        prop = context.property

        template = None
        if match.intent != Intent.OTHER and match.confidence >= self.intent_confidence_threshold:
            template = self.templates.for_intent(match.intent.value)

        if template is not None:
            try:
                rendered = render(template, facts)
            except MissingVariable as exc:
                logger.info(
                    "Template slot unresolved, degrading to generation",
                    extra={
                        "context": {
                            "conversation_id": message.conversation_id,
                            "template": template.version_tag,
                            "missing": exc.names,
                        }
                    },
                )
                return self._generation_plan(message, context, match, intent_key, facts, template, tuple(exc.names))

            variables = {name: facts[name] for name in sorted(template.required_variables)}
            return CompositionPlan(
                message=message,
                context=context,
                intent=match,
                normalized_intent=intent_key,
                mode=CompositionMode.TEMPLATE,
                fingerprint=fingerprint(prop.property_id, prop.version, intent_key, variables, template.version_tag),
                variables=variables,
                facts=facts,
                template=template,
                rendered=rendered,
            )

        return self._generation_plan(message, context, match, intent_key, facts, None, ())

    def _generation_plan(self, message, context, match, intent_key, facts, template, missing) -> CompositionPlan:
        prop = context.property
        # greeting is applied per guest in finalize, so the name stays out of the shared body
        variables = {name: value for name, value in facts.items() if name != "guest_name"}
        base = template.version_tag if template else "free_form"
        template_version = f"generate:{base}:voice@{self.voice.version}"
        if missing:
            template_version += ":missing=" + ",".join(missing)
        return CompositionPlan(
            message=message,
            context=context,
            intent=match,
            normalized_intent=intent_key,
            mode=CompositionMode.GENERATE,
            fingerprint=fingerprint(prop.property_id, prop.version, intent_key, variables, template_version),
            variables=variables,
            facts=facts,
            template=template,
            missing=missing,
        )

    def build_prompt(self, plan: CompositionPlan) -> PromptContext:
        facts = "\n".join(f"- {name}: {value}" for name, value in sorted(plan.variables.items())) or "- (none)"
        system_prompt = SYSTEM_PROMPT.format(
            property_name=plan.context.property.name,
            tone=self.voice.tone.value,
            facts=facts,
        )
        if plan.missing:
            system_prompt += MISSING_FACTS_PROMPT.format(missing=", ".join(plan.missing))
        return PromptContext(
            system_prompt=system_prompt,
            user_message=plan.message.raw_text,
            facts=dict(plan.variables),
            missing_variables=list(plan.missing),
        )

    async def _generate(self, prompt: PromptContext) -> str:
        for attempt in range(1, self.generation_max_attempts + 1):
            try:
                return await asyncio.wait_for(self.backend.generate(prompt), timeout=self.generation_timeout_seconds)
            except asyncio.TimeoutError:
                error = GenerationError(GenerationError.TIMEOUT, "generation timed out")
            except GenerationError as exc:
                error = exc
            except Exception as exc:
                raise CompositionError(f"Generation failed: {exc}", "generation_failed") from exc

            if not error.transient:
                raise CompositionError(f"Generation refused: {error}", error.kind) from error
            if attempt >= self.generation_max_attempts:
                raise CompositionError(
                    f"Generation failed after {attempt} attempts: {error}", "generation_exhausted"
                ) from error

            delay = self.generation_backoff_seconds * 2 ** (attempt - 1)
            delay += self.rng.uniform(0, self.generation_backoff_seconds)
            logger.warning(
                "Generation retry",
                extra={"context": {"attempt": attempt, "kind": error.kind, "delay": round(delay, 3)}},
            )
            await self.sleep(delay)
        raise CompositionError("Generation not attempted", "generation_failed")

    async def realize(self, plan: CompositionPlan) -> ResponseCandidate:
        """Produce the reply body. Raises ``CompositionError`` or ``PolicyViolation``."""
        if plan.mode == CompositionMode.TEMPLATE:
            candidate = ResponseCandidate(
                text=plan.rendered,
                source_template_id=plan.template.version_tag,
                variables_resolved=dict(plan.variables),
            )
        else:
            text = (await self._generate(self.build_prompt(plan)) or "").strip()
            if not text:
                raise CompositionError("Generation returned empty text", "empty_generation")
            candidate = ResponseCandidate(
                text=text,
                source_template_id=plan.template.version_tag if plan.template else None,
                generated_by_model=self.model_name,
                variables_resolved=dict(plan.variables),
            )
        self.guard.check(candidate.text, plan.context)
        return candidate

    def finalize(self, plan: CompositionPlan, candidate: ResponseCandidate) -> ResponseCandidate:
        """Frame a (possibly cached) body for this guest and re-check it against current policy."""
        text = frame(candidate.text, self.voice, plan.facts)
        self.guard.check(text, plan.context)
        return replace(candidate, text=text)

    async def compose(
        self,
        message: GuestMessage,
        context: ConversationContext,
        signal: EscalationSignal,
    ) -> ResponseCandidate:
        plan = self.plan(message, context, signal)
        return self.finalize(plan, await self.realize(plan))
