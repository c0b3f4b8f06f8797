from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from cohost.schemas.message import Platform, SenderRole


class EventType(str, Enum):
    MESSAGE = "message"
    BOOKING_UPDATE = "booking_update"


class InboundWebhook(BaseModel):
    """Platform event envelope. ``payload`` stays opaque until the platform validator parses it."""

    model_config = ConfigDict(populate_by_name=True)

    platform: str
    event_type: EventType = Field(validation_alias=AliasChoices("event_type", "eventType"))
    platform_event_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("platform_event_id", "platformEventId"),
    )
    property_ref: Optional[str] = Field(default=None, validation_alias=AliasChoices("property_ref", "propertyRef"))
    conversation_ref: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("conversation_ref", "conversationRef"),
    )
    payload: Dict[str, Any] = Field(default_factory=dict)


class PlatformPayload(BaseModel):
    """Common accessors every platform variant implements."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    def text(self) -> Optional[str]:
        raise NotImplementedError

    def sender_role(self) -> SenderRole:
        return SenderRole.GUEST

    def sent_at(self) -> Optional[datetime]:
        return None

    def conversation_ref(self) -> Optional[str]:
        return None

    def property_ref(self) -> Optional[str]:
        return None


# --- Airbnb ---------------------------------------------------------------


class AirbnbMessage(BaseModel):
    id: Optional[str] = None
    text: Optional[str] = None
    sender_role: str = "guest"
    created_at: Optional[datetime] = None


class AirbnbPayload(PlatformPayload):
    thread_id: Optional[str] = None
    message: AirbnbMessage

    def text(self) -> Optional[str]:
        return self.message.text

    def sender_role(self) -> SenderRole:
        role = (self.message.sender_role or "").lower()
        if role in {"host", "cohost"}:
            return SenderRole.HOST
        if role in {"system", "airbnb"}:
            return SenderRole.SYSTEM
        return SenderRole.GUEST

    def sent_at(self) -> Optional[datetime]:
        return self.message.created_at

    def conversation_ref(self) -> Optional[str]:
        return self.thread_id


# --- Vrbo -----------------------------------------------------------------


class VrboPayload(PlatformPayload):
    conversation_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("conversationId", "conversation_id"))
    message_body: Optional[str] = Field(default=None, validation_alias=AliasChoices("messageBody", "message_body"))
    sender_type: str = Field(default="TRAVELER", validation_alias=AliasChoices("senderType", "sender_type"))
    sent_at_: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("sentAt", "sent_at"))

    def text(self) -> Optional[str]:
        return self.message_body

    def sender_role(self) -> SenderRole:
        sender = (self.sender_type or "").upper()
        if sender in {"OWNER", "MANAGER"}:
            return SenderRole.HOST
        if sender == "SYSTEM":
            return SenderRole.SYSTEM
        return SenderRole.GUEST

    def sent_at(self) -> Optional[datetime]:
        return self.sent_at_

    def conversation_ref(self) -> Optional[str]:
        return self.conversation_id


# --- Booking.com ----------------------------------------------------------


class BookingComSender(BaseModel):
    participant_type: str = "GUEST"


class BookingComPayload(PlatformPayload):
    conversation_id: Optional[str] = None
    content: Optional[str] = None
    sender: BookingComSender = Field(default_factory=BookingComSender)
    created_timestamp: Optional[datetime] = None

    def text(self) -> Optional[str]:
        return self.content

    def sender_role(self) -> SenderRole:
        participant = (self.sender.participant_type or "").upper()
        if participant in {"PROPERTY", "HOTEL"}:
            return SenderRole.HOST
        return SenderRole.GUEST

    def sent_at(self) -> Optional[datetime]:
        return self.created_timestamp

    def conversation_ref(self) -> Optional[str]:
        return self.conversation_id


# --- Hostaway -------------------------------------------------------------


class HostawayMessageData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[int] = None
    conversation_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("conversationId", "conversation_id"))
    listing_map_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("listingMapId", "listing_map_id"))
    body: Optional[str] = None
    is_incoming: int = Field(default=1, validation_alias=AliasChoices("isIncoming", "is_incoming"))
    inserted_on: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("insertedOn", "inserted_on"))


class HostawayPayload(PlatformPayload):
    object: str = "conversationMessage"
    event: str = "message.received"
    data: HostawayMessageData

    def text(self) -> Optional[str]:
        return self.data.body

    def sender_role(self) -> SenderRole:
        return SenderRole.GUEST if self.data.is_incoming else SenderRole.HOST

    def sent_at(self) -> Optional[datetime]:
        return self.data.inserted_on

    def conversation_ref(self) -> Optional[str]:
        if self.data.conversation_id is None:
            return None
        return str(self.data.conversation_id)

    def property_ref(self) -> Optional[str]:
        if self.data.listing_map_id is None:
            return None
        return str(self.data.listing_map_id)


PAYLOAD_MODELS: Dict[Platform, type] = {
    Platform.AIRBNB: AirbnbPayload,
    Platform.VRBO: VrboPayload,
    Platform.BOOKING_COM: BookingComPayload,
    Platform.HOSTAWAY: HostawayPayload,
}


class WebhookResponse(BaseModel):
    success: bool
    status: str  # processed, duplicate, escalated, ignored, failed
    conversation_id: Optional[str] = None
    state: Optional[str] = None
    message: Optional[str] = None
