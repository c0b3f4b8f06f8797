import re
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

from cohost.logging_config import get_logger
from cohost.schemas.brand_voice import BrandVoiceConfig, TemplateDefinition, TemplateSet, Tone, placeholders
from cohost.schemas.context import ConversationContext
from cohost.services.errors import CompositionError, MissingVariable

logger = get_logger("template_service")

LEFTOVER_PLACEHOLDER = re.compile(r"\{[A-Za-z_][A-Za-z0-9_]*\}")

DEFAULT_TEMPLATES = TemplateSet(
    version="1",
    templates=[
        TemplateDefinition(
            template_id="wifi",
            intent="wifi",
            body="The WiFi network is {wifi_network} and the password is {wifi_password}.",
        ),
        TemplateDefinition(
            template_id="check_in",
            intent="check_in",
            body="Check-in is from {check_in_time} ({timezone}). We'll send arrival details before your stay.",
        ),
        TemplateDefinition(
            template_id="check_out",
            intent="check_out",
            body="Check-out is by {check_out_time} ({timezone}). Just leave the keys where you found them.",
        ),
        TemplateDefinition(
            template_id="door_code",
            intent="door_code",
            body="Your door code is {door_code}. It works from check-in time on your arrival day.",
        ),
        TemplateDefinition(template_id="parking", intent="parking", body="Parking: {parking_info}"),
        TemplateDefinition(template_id="address", intent="address", body="The address is {address}."),
        TemplateDefinition(
            template_id="house_rules",
            intent="house_rules",
            body="Here are the house rules for {property_name}: {house_rules}",
        ),
        TemplateDefinition(
            template_id="greeting",
            intent="greeting",
            body="How can we help with your stay at {property_name}?",
        ),
        TemplateDefinition(
            template_id="thanks",
            intent="thanks",
            body="You're very welcome! Let us know if there's anything else you need.",
        ),
    ],
)

DEFAULT_BRAND_VOICE = BrandVoiceConfig()


def _load_yaml(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping")
    return data


def load_brand_voice(path: Optional[str]) -> BrandVoiceConfig:
    """Load and validate a brand voice file (YAML or JSON). Invalid config raises at startup."""
    if not path:
        return DEFAULT_BRAND_VOICE
    voice = BrandVoiceConfig.model_validate(_load_yaml(Path(path)))
    logger.info(f"Loaded brand voice {voice.version} from {path}")
    return voice


def load_templates(path: Optional[str], voice: BrandVoiceConfig) -> TemplateSet:
    templates = DEFAULT_TEMPLATES
    if path:
        templates = TemplateSet.model_validate(_load_yaml(Path(path)))
        logger.info(f"Loaded {len(templates.templates)} templates (set {templates.version}) from {path}")
    templates.check_against(voice)
    return templates


def resolve_variables(context: ConversationContext) -> Dict[str, str]:
    """Every fact known about the property and booking, as display strings. Unknown facts are absent."""
    prop = context.property
    values = {
        "property_name": prop.name,
        "timezone": prop.timezone,
        "address": prop.address,
        "wifi_network": prop.wifi_network,
        "wifi_password": prop.wifi_password,
        "check_in_time": prop.check_in_time,
        "check_out_time": prop.check_out_time,
        "parking_info": prop.parking_info,
        "house_rules": prop.house_rules,
    }
    booking = context.booking
    if booking is not None:
        values.update(
            {
                "guest_name": booking.guest_name,
                "door_code": booking.door_code,
                "check_in_date": booking.check_in_date.isoformat() if booking.check_in_date else None,
                "check_out_date": booking.check_out_date.isoformat() if booking.check_out_date else None,
            }
        )
    return {name: str(value) for name, value in values.items() if value not in (None, "")}


def check_rendered(text: str) -> str:
    leftover = LEFTOVER_PLACEHOLDER.findall(text)
    if leftover:
        raise CompositionError(f"Rendered text has unresolved placeholders: {sorted(set(leftover))}", "leftover_placeholder")
    return text


def render(template: TemplateDefinition, variables: Mapping[str, str]) -> str:
    """Fill a template body. Raises ``MissingVariable`` for any slot without a value."""
    required = template.required_variables
    missing = [name for name in required if not variables.get(name)]
    if missing:
        raise MissingVariable(missing)
    text = template.body.format(**{name: variables[name] for name in required})
    return check_rendered(text)


def frame(body: str, voice: BrandVoiceConfig, variables: Mapping[str, str]) -> str:
    """Wrap a reply body in the brand voice's greeting and sign-off."""
    parts = []
    if voice.tone != Tone.CONCISE:
        greeting = voice.greeting
        needed = placeholders(greeting)
        if all(variables.get(name) for name in needed):
            parts.append(greeting.format(**{name: variables[name] for name in needed}))
        else:
            parts.append(voice.anonymous_greeting)
    parts.append(body.strip())
    if voice.sign_off:
        needed = placeholders(voice.sign_off)
        if all(variables.get(name) for name in needed):
            parts.append(voice.sign_off.format(**{name: variables[name] for name in needed}))
    return check_rendered("\n\n".join(parts))
