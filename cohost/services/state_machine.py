from enum import Enum


class ConversationState(str, Enum):
    IDLE = "idle"
    AWAITING_RESPONSE = "awaiting_response"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


VALID_TRANSITIONS = {
    ConversationState.IDLE: [ConversationState.AWAITING_RESPONSE, ConversationState.ESCALATED],
    ConversationState.AWAITING_RESPONSE: [ConversationState.RESOLVED, ConversationState.ESCALATED],
    ConversationState.ESCALATED: [ConversationState.RESOLVED],
    ConversationState.RESOLVED: [ConversationState.IDLE],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: ConversationState, to_state: ConversationState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: ConversationState, to_state: ConversationState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: ConversationState, to_state: ConversationState) -> ConversationState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def await_response(current_state: ConversationState) -> ConversationState:
    """Inbound message accepted for automated handling."""
    return transition(current_state, ConversationState.AWAITING_RESPONSE)


def complete_response(current_state: ConversationState) -> ConversationState:
    """Automated reply delivered."""
    return transition(current_state, ConversationState.RESOLVED)


def escalate(current_state: ConversationState) -> ConversationState:
    """Hand the conversation to a human."""
    return transition(current_state, ConversationState.ESCALATED)


def human_resolve(current_state: ConversationState) -> ConversationState:
    """Human closes an escalated conversation."""
    return transition(current_state, ConversationState.RESOLVED)


def reopen(current_state: ConversationState) -> ConversationState:
    """New inbound message on a resolved conversation."""
    return transition(current_state, ConversationState.IDLE)
