from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class ConversationStateResponse(BaseModel):
    conversation_id: str
    state: str
    pending: int
    escalation_reasons: List[str] = []
    updated_at: Optional[datetime] = None


class ResolveRequest(BaseModel):
    operator_id: str
    operator_name: Optional[str] = None
    note: Optional[str] = None


class ResolveResponse(BaseModel):
    success: bool
    conversation_id: str
    old_state: Optional[str] = None
    new_state: Optional[str] = None
    message: Optional[str] = None


class CacheInvalidateRequest(BaseModel):
    property_id: Optional[str] = None
    template_id: Optional[str] = None


class CacheInvalidateResponse(BaseModel):
    success: bool
    evicted: int
    message: Optional[str] = None
