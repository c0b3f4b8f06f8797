from cohost.services.orchestrator_service import (
    ConversationOrchestrator,
    Engine,
    ProcessingOutcome,
    PropertyGate,
    build_engine,
)
from cohost.services.state_machine import (
    ConversationState,
    InvalidTransitionError,
    can_transition,
    transition,
)
from cohost.services.state_service import ConversationStateService, Ticket
