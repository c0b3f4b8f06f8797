from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional


class GenerationError(Exception):
    """Generative backend failure. ``kind`` is rate_limited, timeout or content_policy."""

    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    CONTENT_POLICY = "content_policy"

    TRANSIENT_KINDS = frozenset({RATE_LIMITED, TIMEOUT})

    def __init__(self, kind: str, message: str = ""):
        super().__init__(message or kind)
        self.kind = kind

    @property
    def transient(self) -> bool:
        return self.kind in self.TRANSIENT_KINDS


@dataclass(frozen=True)
class PromptContext:
    """Everything a backend needs for one generation call."""

    system_prompt: str
    user_message: str
    history: List[dict] = field(default_factory=list)
    facts: Dict[str, str] = field(default_factory=dict)
    missing_variables: List[str] = field(default_factory=list)
    temperature: float = 0.4
    max_tokens: int = 400

    def to_messages(self) -> List[dict]:
        messages = [{"role": "system", "content": self.system_prompt}]
        messages.extend(self.history)
        messages.append({"role": "user", "content": self.user_message})
        return messages


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


class GenerativeBackend(ABC):
    """Abstract base class for text generation backends."""

    @abstractmethod
    async def generate(self, prompt: PromptContext) -> str:
        """Generate reply text. Raises ``GenerationError``."""
        pass

    async def aclose(self) -> None:
        return None
