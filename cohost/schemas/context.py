from datetime import date
from typing import FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from cohost.schemas.message import Flag, Turn


class PropertySummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    property_id: str
    name: str
    version: int = 1
    timezone: str = "UTC"
    address: Optional[str] = None
    wifi_network: Optional[str] = None
    wifi_password: Optional[str] = None
    check_in_time: Optional[str] = None
    check_out_time: Optional[str] = None
    parking_info: Optional[str] = None
    house_rules: Optional[str] = None
    policies: List[str] = Field(default_factory=list)
    cache_ttl_seconds: Optional[int] = None


class BookingSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    booking_id: str
    guest_name: Optional[str] = None
    check_in_date: Optional[date] = None
    check_out_date: Optional[date] = None
    door_code: Optional[str] = None
    status: str = "confirmed"
    guests: Optional[int] = None


class ConversationContext(BaseModel):
    """Snapshot assembled for one inbound message. Never mutated; use ``model_copy``."""

    model_config = ConfigDict(frozen=True)

    property: PropertySummary
    booking: Optional[BookingSummary] = None
    history: Tuple[Turn, ...] = ()
    escalation_flags: FrozenSet[Flag] = Field(default_factory=frozenset)
