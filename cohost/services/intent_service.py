import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple

from cohost.logging_config import get_logger

logger = get_logger("intent_service")


class Intent(str, Enum):
    WIFI = "wifi"  # network name or password
    CHECK_IN = "check_in"  # arrival time, early arrival
    CHECK_OUT = "check_out"  # departure time
    DOOR_CODE = "door_code"  # lockbox / keypad code
    PARKING = "parking"
    ADDRESS = "address"  # directions, location
    HOUSE_RULES = "house_rules"
    GREETING = "greeting"
    THANKS = "thanks"
    OTHER = "other"  # anything else, answered by generation


@dataclass(frozen=True)
class IntentMatch:
    intent: Intent
    confidence: float


INTENT_PATTERNS: Dict[Intent, Tuple[Tuple[re.Pattern, float], ...]] = {
    Intent.WIFI: (
        (re.compile(r"\b(wi-?fi|wireless)\b"), 0.9),
        (re.compile(r"\binternet\b"), 0.75),
        (re.compile(r"\b(network|router)\b.*\bpassword\b|\bpassword\b.*\b(network|router)\b"), 0.7),
    ),
    Intent.CHECK_IN: (
        (re.compile(r"\bcheck(ing)?[- ]?in\b"), 0.9),
        (re.compile(r"\b(when|what time) can (we|i) (arrive|get in|come)\b"), 0.8),
        (re.compile(r"\b(early arrival|arrive early)\b"), 0.7),
    ),
    Intent.CHECK_OUT: (
        (re.compile(r"\bcheck(ing)?[- ]?out\b"), 0.9),
        (re.compile(r"\b(when|what time) (do|should|must) (we|i) (leave|depart)\b"), 0.8),
        (re.compile(r"\blate departure\b"), 0.7),
    ),
    Intent.DOOR_CODE: (
        (re.compile(r"\b(door|entry|access|lock|keypad|gate)[- ]?code\b"), 0.9),
        (re.compile(r"\b(lock ?box|key ?box|keypad)\b"), 0.75),
        (re.compile(r"\bhow (do|can) (we|i) get (in|inside)\b"), 0.65),
    ),
    Intent.PARKING: (
        (re.compile(r"\bpark(ing)?\b"), 0.9),
        (re.compile(r"\b(garage|driveway)\b"), 0.7),
    ),
    Intent.ADDRESS: (
        (re.compile(r"\b(address|directions)\b"), 0.9),
        (re.compile(r"\bwhere (is|are) (the|your) (place|property|house|apartment|flat|unit)\b"), 0.8),
        (re.compile(r"\bhow (do|can) (we|i) (get|find) (there|to the (place|property|house|apartment))\b"), 0.75),
    ),
    Intent.HOUSE_RULES: (
        (re.compile(r"\b(house )?rules\b"), 0.85),
        (re.compile(r"\b(quiet hours|smoking|allowed to smoke)\b"), 0.7),
    ),
    Intent.GREETING: ((re.compile(r"^(hi|hello|hey|good (morning|afternoon|evening)|hola)\b"), 0.6),),
    Intent.THANKS: ((re.compile(r"\b(thanks|thank you|thx|much appreciated)\b"), 0.65),),
}

STOPWORDS = frozenset(
    """
    a an and any are as at be been can could do does for from get got have hello hey hi how i i'm if in
    is it its me my of on or our please so some that the there this to us was we what when where which
    who why will with would you your yours just also about there's here thanks thank
    """.split()
)

_TOKEN_RE = re.compile(r"[a-z0-9']+")


def normalize_for_matching(text: str) -> str:
    """Normalize text for matching short phrases (casefold + trim punctuation)."""
    if not text:
        return ""

    normalized = text.strip().casefold()
    normalized = re.sub(r"\s+", " ", normalized)
    normalized = re.sub(r"^[^\w]+|[^\w]+$", "", normalized)
    return normalized


def content_keywords(text: str) -> list:
    words = _TOKEN_RE.findall(normalize_for_matching(text))
    keywords = set()
    for word in words:
        if word in STOPWORDS or len(word) <= 2:
            continue
        if len(word) > 4 and word.endswith("s"):
            word = word[:-1]
        keywords.add(word)
    return sorted(keywords)


def classify_guest_intent(text: str) -> IntentMatch:
    """Pattern-based intent. Highest confidence wins; ties keep declaration order."""
    normalized = normalize_for_matching(text)
    best = IntentMatch(Intent.OTHER, 0.0)
    for intent, patterns in INTENT_PATTERNS.items():
        for pattern, weight in patterns:
            if weight > best.confidence and pattern.search(normalized):
                best = IntentMatch(intent, weight)
    logger.debug(f"Intent {best.intent.value} (confidence={best.confidence})")
    return best


def normalized_intent(text: str, match: IntentMatch, threshold: float) -> str:
    """Cache key component. Free-form requests collapse paraphrases onto their content keywords."""
    if match.intent != Intent.OTHER and match.confidence >= threshold:
        return match.intent.value
    keywords = content_keywords(text)
    return "free_form:" + "-".join(keywords)
