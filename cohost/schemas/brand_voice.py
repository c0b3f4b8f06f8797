"""Versioned brand voice and template configuration.

Both models validate at load time: a bad regex, an unknown placeholder or a
duplicate template family raises immediately instead of surfacing later as a
broken guest reply.
"""

import re
import string
from enum import Enum
from typing import List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

KNOWN_VARIABLES = frozenset(
    {
        "guest_name",
        "property_name",
        "wifi_network",
        "wifi_password",
        "check_in_time",
        "check_out_time",
        "check_in_date",
        "check_out_date",
        "door_code",
        "address",
        "parking_info",
        "house_rules",
        "timezone",
    }
)


def placeholders(text: str) -> Set[str]:
    """Names of ``{placeholder}`` fields in a template string."""
    names = set()
    for _, field_name, _, _ in string.Formatter().parse(text or ""):
        if field_name:
            names.add(field_name)
    return names


class Tone(str, Enum):
    WARM = "warm"
    PROFESSIONAL = "professional"
    CONCISE = "concise"


class BrandVoiceConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    version: str = "1"
    tone: Tone = Tone.WARM
    greeting: str = "Hi {guest_name},"
    anonymous_greeting: str = "Hi there,"
    sign_off: Optional[str] = None
    allowed_variables: List[str] = Field(default_factory=lambda: sorted(KNOWN_VARIABLES))
    forbidden_commitments: List[str] = Field(default_factory=list)
    holding_message: str = (
        "Thanks for your message. We're looking into this and someone from our team will follow up shortly."
    )

    @field_validator("allowed_variables")
    @classmethod
    def _known_variables_only(cls, value: List[str]) -> List[str]:
        unknown = set(value) - KNOWN_VARIABLES
        if unknown:
            raise ValueError(f"unknown variables: {sorted(unknown)}")
        return value

    @field_validator("forbidden_commitments")
    @classmethod
    def _patterns_compile(cls, value: List[str]) -> List[str]:
        for pattern in value:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"invalid forbidden commitment pattern {pattern!r}: {exc}") from exc
        return value

    @model_validator(mode="after")
    def _greeting_uses_allowed_variables(self) -> "BrandVoiceConfig":
        used = placeholders(self.greeting) | placeholders(self.anonymous_greeting)
        if self.sign_off:
            used |= placeholders(self.sign_off)
        disallowed = used - set(self.allowed_variables)
        if disallowed:
            raise ValueError(f"greeting/sign-off use disallowed variables: {sorted(disallowed)}")
        if placeholders(self.anonymous_greeting) or placeholders(self.holding_message):
            raise ValueError("anonymous_greeting and holding_message must not contain placeholders")
        return self


class TemplateDefinition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    template_id: str
    intent: str
    version: int = 1
    body: str

    @property
    def required_variables(self) -> Set[str]:
        return placeholders(self.body)

    @property
    def version_tag(self) -> str:
        return f"{self.template_id}@{self.version}"


class TemplateSet(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    version: str = "1"
    templates: List[TemplateDefinition]

    @model_validator(mode="after")
    def _one_template_per_intent(self) -> "TemplateSet":
        seen = set()
        for template in self.templates:
            if template.intent in seen:
                raise ValueError(f"duplicate template family for intent {template.intent!r}")
            seen.add(template.intent)
            unknown = template.required_variables - KNOWN_VARIABLES
            if unknown:
                raise ValueError(f"template {template.template_id!r} uses unknown variables {sorted(unknown)}")
        return self

    def check_against(self, voice: BrandVoiceConfig) -> None:
        """Raise ``ValueError`` when a template needs a variable the brand voice does not allow."""
        allowed = set(voice.allowed_variables)
        for template in self.templates:
            disallowed = template.required_variables - allowed
            if disallowed:
                raise ValueError(
                    f"template {template.template_id!r} uses variables not allowed by brand voice "
                    f"{voice.version}: {sorted(disallowed)}"
                )

    def for_intent(self, intent: str) -> Optional[TemplateDefinition]:
        for template in self.templates:
            if template.intent == intent:
                return template
        return None
