from cohost.models.booking import Booking
from cohost.models.conversation_turn import ConversationTurn
from cohost.models.processed_event import ProcessedEvent
from cohost.models.property import Property

__all__ = [
    "Property",
    "Booking",
    "ConversationTurn",
    "ProcessedEvent",
]
