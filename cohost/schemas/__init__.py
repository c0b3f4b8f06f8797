from cohost.schemas.context import BookingSummary, ConversationContext, PropertySummary
from cohost.schemas.message import Flag, GuestMessage, Platform, SenderRole, Speaker, Turn
from cohost.schemas.webhook import EventType, InboundWebhook, WebhookResponse

__all__ = [
    "BookingSummary",
    "ConversationContext",
    "EventType",
    "Flag",
    "GuestMessage",
    "InboundWebhook",
    "Platform",
    "PropertySummary",
    "SenderRole",
    "Speaker",
    "Turn",
    "WebhookResponse",
]
