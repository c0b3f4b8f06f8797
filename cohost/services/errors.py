"""Error taxonomy shared by the engine.

Every engine error carries a machine-readable ``code`` so routers and logs
can report it without string matching.
"""

from typing import Iterable, Optional


class CohostError(Exception):
    code = "cohost_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


# Validation


class NormalizationError(CohostError):
    code = "malformed_payload"


class DuplicateEvent(CohostError):
    code = "duplicate_event"


# Context


class ContextUnavailable(CohostError):
    code = "context_unavailable"


# Composition


class CompositionError(CohostError):
    code = "composition_error"


class MissingVariable(CompositionError):
    code = "missing_variable"

    def __init__(self, names: Iterable[str]):
        self.names = sorted(set(names))
        super().__init__(f"Unresolved template variables: {', '.join(self.names)}")


class PolicyViolation(CompositionError):
    code = "policy_violation"

    def __init__(self, topics: Iterable[str], text: str = ""):
        self.topics = sorted(set(topics))
        self.text = text
        super().__init__(f"Candidate commits outside property policy: {', '.join(self.topics)}")


# Dispatch


class DispatchError(CohostError):
    code = "dispatch_error"
    transient = False

    def __init__(self, message: str, code: Optional[str] = None, attempts: int = 0):
        super().__init__(message, code)
        self.attempts = attempts


class TransientDispatchError(DispatchError):
    code = "dispatch_transient"
    transient = True


class PermanentDispatchError(DispatchError):
    code = "dispatch_permanent"


# Backpressure


class PropertyBusy(CohostError):
    code = "property_busy"
