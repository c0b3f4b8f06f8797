from datetime import datetime
from enum import Enum
from typing import FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field


class Platform(str, Enum):
    AIRBNB = "airbnb"
    VRBO = "vrbo"
    BOOKING_COM = "booking_com"
    HOSTAWAY = "hostaway"


class SenderRole(str, Enum):
    GUEST = "guest"
    HOST = "host"
    SYSTEM = "system"


class Speaker(str, Enum):
    GUEST = "guest"
    AGENT = "agent"  # automated reply
    HUMAN = "human"  # host or co-host operator


class Flag(str, Enum):
    ESCALATED = "escalated"
    SAFETY = "safety"
    COMPLAINT = "complaint"
    POLICY = "policy"


class GuestMessage(BaseModel):
    """Canonical inbound message, independent of the platform it came from."""

    model_config = ConfigDict(frozen=True)

    conversation_id: str
    property_id: str
    platform: Platform
    raw_text: str
    received_at: datetime
    sender_role: SenderRole = SenderRole.GUEST
    platform_event_id: Optional[str] = None


class Turn(BaseModel):
    model_config = ConfigDict(frozen=True)

    speaker: Speaker
    text: str
    timestamp: datetime
    channel: str
    seq: int = 0
    flags: FrozenSet[Flag] = Field(default_factory=frozenset)

    @property
    def flagged(self) -> bool:
        return bool(self.flags)

    def sort_key(self) -> tuple:
        return (self.timestamp, self.seq)
