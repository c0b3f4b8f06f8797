import pytest

from cohost.services.state_machine import (
    ConversationState,
    InvalidTransitionError,
    await_response,
    can_transition,
    complete_response,
    escalate,
    human_resolve,
    reopen,
    transition,
)


class TestValidTransitions:
    def test_idle_to_awaiting_response(self):
        result = transition(ConversationState.IDLE, ConversationState.AWAITING_RESPONSE)
        assert result == ConversationState.AWAITING_RESPONSE

    def test_idle_to_escalated(self):
        result = transition(ConversationState.IDLE, ConversationState.ESCALATED)
        assert result == ConversationState.ESCALATED

    def test_awaiting_response_to_resolved(self):
        result = transition(ConversationState.AWAITING_RESPONSE, ConversationState.RESOLVED)
        assert result == ConversationState.RESOLVED

    def test_awaiting_response_to_escalated(self):
        result = transition(ConversationState.AWAITING_RESPONSE, ConversationState.ESCALATED)
        assert result == ConversationState.ESCALATED

    def test_escalated_to_resolved(self):
        result = transition(ConversationState.ESCALATED, ConversationState.RESOLVED)
        assert result == ConversationState.RESOLVED

    def test_resolved_to_idle(self):
        result = transition(ConversationState.RESOLVED, ConversationState.IDLE)
        assert result == ConversationState.IDLE


class TestInvalidTransitions:
    def test_escalated_to_awaiting_response(self):
        with pytest.raises(InvalidTransitionError):
            transition(ConversationState.ESCALATED, ConversationState.AWAITING_RESPONSE)

    def test_idle_to_resolved(self):
        with pytest.raises(InvalidTransitionError):
            transition(ConversationState.IDLE, ConversationState.RESOLVED)

    def test_resolved_to_escalated(self):
        with pytest.raises(InvalidTransitionError):
            transition(ConversationState.RESOLVED, ConversationState.ESCALATED)

    def test_same_state(self):
        with pytest.raises(InvalidTransitionError):
            transition(ConversationState.AWAITING_RESPONSE, ConversationState.AWAITING_RESPONSE)

    def test_error_names_both_states(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(ConversationState.ESCALATED, ConversationState.IDLE)
        assert exc_info.value.from_state == ConversationState.ESCALATED
        assert exc_info.value.to_state == ConversationState.IDLE
        assert "escalated -> idle" in str(exc_info.value)


class TestHelperFunctions:
    def test_await_response(self):
        assert await_response(ConversationState.IDLE) == ConversationState.AWAITING_RESPONSE

    def test_complete_response(self):
        assert complete_response(ConversationState.AWAITING_RESPONSE) == ConversationState.RESOLVED

    def test_escalate(self):
        assert escalate(ConversationState.AWAITING_RESPONSE) == ConversationState.ESCALATED

    def test_human_resolve(self):
        assert human_resolve(ConversationState.ESCALATED) == ConversationState.RESOLVED

    def test_reopen(self):
        assert reopen(ConversationState.RESOLVED) == ConversationState.IDLE

    def test_human_resolve_requires_escalation(self):
        with pytest.raises(InvalidTransitionError):
            human_resolve(ConversationState.IDLE)


class TestCanTransition:
    def test_returns_true_for_valid(self):
        assert can_transition(ConversationState.IDLE, ConversationState.ESCALATED) is True

    def test_returns_false_for_invalid(self):
        assert can_transition(ConversationState.ESCALATED, ConversationState.IDLE) is False
