import re
import time
from abc import ABC, abstractmethod
from typing import Optional

from cohost.logging_config import get_logger
from cohost.schemas.context import ConversationContext
from cohost.schemas.message import GuestMessage
from cohost.services.llm.base import GenerationError, GenerativeBackend, PromptContext

logger = get_logger("sentiment_service")


class SentimentScorer(ABC):
    """Scores how negative/urgent a guest message reads, 0 (calm) to 1 (furious)."""

    @abstractmethod
    async def score(self, message: GuestMessage, context: ConversationContext) -> Optional[float]:
        pass


NEGATIVE_WORDS = {
    "angry": 0.6,
    "annoyed": 0.4,
    "awful": 0.6,
    "frustrated": 0.6,
    "furious": 0.9,
    "horrible": 0.7,
    "terrible": 0.7,
    "worst": 0.8,
    "ridiculous": 0.6,
    "disappointed": 0.5,
    "upset": 0.5,
    "unhappy": 0.5,
    "never again": 0.8,
    "waste": 0.4,
    "scam": 0.9,
    "nightmare": 0.8,
}

INTENSIFIERS = ("very", "so", "extremely", "really", "absolutely")

_WORD_RE = re.compile(r"[a-z']+")


class LexiconSentimentScorer(SentimentScorer):
    """Local word-list scorer. Deterministic, no I/O."""

    def __init__(self, lexicon: Optional[dict] = None):
        self.lexicon = lexicon or NEGATIVE_WORDS

    def score_text(self, text: str) -> float:
        normalized = " ".join(_WORD_RE.findall(text.casefold()))
        padded = f" {normalized} "
        hits = [weight for phrase, weight in self.lexicon.items() if f" {phrase} " in padded]
        if not hits:
            return 0.0
        total = max(hits) + 0.1 * (len(hits) - 1)
        if any(f" {word} " in padded for word in INTENSIFIERS):
            total += 0.1
        exclamations = text.count("!")
        if exclamations >= 2:
            total += 0.1
        letters = [char for char in text if char.isalpha()]
        if len(letters) >= 8 and sum(char.isupper() for char in letters) / len(letters) > 0.7:
            total += 0.1
        return round(min(1.0, total), 3)

    async def score(self, message: GuestMessage, context: ConversationContext) -> Optional[float]:
        return self.score_text(message.raw_text)


SENTIMENT_PROMPT = """Rate how upset or urgent this vacation rental guest message is.
Answer with ONE number between 0 and 1, where 0 is calm and 1 is furious or desperate.

Message: {message}

Score:"""

_SCORE_RE = re.compile(r"(?<![\d.])(0(?:\.\d+)?|1(?:\.0+)?)(?![\d.])")


class LLMSentimentScorer(SentimentScorer):
    """Asks the generative backend for a score; any failure means no score."""

    def __init__(self, backend: GenerativeBackend):
        self.backend = backend

    async def score(self, message: GuestMessage, context: ConversationContext) -> Optional[float]:
        prompt = PromptContext(
            system_prompt="You are a precise sentiment rater. Reply with a number only.",
            user_message=SENTIMENT_PROMPT.format(message=message.raw_text),
            temperature=0.0,
            max_tokens=8,
        )
        start = time.monotonic()
        try:
            raw = await self.backend.generate(prompt)
        except GenerationError as exc:
            logger.warning(f"Sentiment LLM failed ({exc.kind}), continuing without score")
            return None
        finally:
            logger.info(
                "Timing",
                extra={
                    "context": {
                        "stage": "sentiment_llm_ms",
                        "elapsed_ms": round((time.monotonic() - start) * 1000, 2),
                    }
                },
            )

        match = _SCORE_RE.search(raw or "")
        if not match:
            logger.warning(f"Unparseable sentiment score: {raw!r}")
            return None
        return float(match.group(1))
