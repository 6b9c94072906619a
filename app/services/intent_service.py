import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from app.config import settings
from app.logging_config import get_logger
from app.services.booking_knowledge import matches_phrase
from app.services.llm import LLMError, LLMProvider, OpenAIProvider

logger = get_logger("intent_service")


class Intent(str, Enum):
    BOOKING = "booking"  # wants to book / see services
    CONFIRM = "confirm"  # agrees to the proposed booking
    CHANGE = "change"  # wants another date/time
    CANCEL = "cancel"  # abandons the booking
    GREETING = "greeting"
    OTHER = "other"


class IntentClassifierError(Exception):
    def __init__(self, message: str, *, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


@dataclass(frozen=True)
class IntentResult:
    intent: Intent
    confidence: float
    source: str  # keyword, llm, fallback


CLASSIFY_PROMPT = """Classify the customer's WhatsApp message for a booking assistant.
Return ONLY a JSON object: {{"intent": "<label>", "confidence": <0..1>}}

Labels:
- booking: wants to book, schedule or make an appointment, or asks what services exist
- confirm: agrees to a proposed booking (yes, confirm, sounds good)
- change: wants a different date, time or service
- cancel: wants to stop or cancel the booking
- greeting: only says hello
- other: anything else

Message: {message}"""

# Checked in order; the first list that matches wins.
_KEYWORD_INTENTS = (
    ("cancel", Intent.CANCEL),
    ("booking", Intent.BOOKING),
    ("affirmative", Intent.CONFIRM),
    ("change", Intent.CHANGE),
    ("greeting", Intent.GREETING),
)

_llm_provider: Optional[LLMProvider] = None


def get_llm_provider() -> Optional[LLMProvider]:
    """Get or create the LLM provider; None when no API key is configured."""
    global _llm_provider
    if not settings.openai_api_key:
        return None
    if _llm_provider is None:
        _llm_provider = OpenAIProvider(api_key=settings.openai_api_key, default_model=settings.intent_model)
    return _llm_provider


def classify_by_keywords(message: str) -> Optional[Intent]:
    for phrase_kind, intent in _KEYWORD_INTENTS:
        if matches_phrase(message, phrase_kind):
            return intent
    return None


def parse_llm_answer(content: str) -> IntentResult:
    text = (content or "").strip()
    if text.startswith("```"):
        text = text.strip("`")
        text = text[text.find("{") :] if "{" in text else text
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise IntentClassifierError(f"unparseable classifier answer: {content[:100]!r}", retryable=False) from exc
    if not isinstance(data, dict):
        raise IntentClassifierError("classifier answer is not an object", retryable=False)
    try:
        intent = Intent(str(data.get("intent", "")).strip().lower())
    except ValueError:
        intent = Intent.OTHER
    try:
        confidence = float(data.get("confidence", 0.0))
    except (TypeError, ValueError):
        confidence = 0.0
    return IntentResult(intent=intent, confidence=max(0.0, min(confidence, 1.0)), source="llm")


def classify_with_llm(message: str, provider: LLMProvider) -> IntentResult:
    started = time.monotonic()
    try:
        response = provider.generate(
            [{"role": "user", "content": CLASSIFY_PROMPT.format(message=message)}],
            model=settings.intent_model,
            temperature=1.0,
            max_tokens=100,
            timeout_seconds=settings.intent_timeout_seconds,
        )
    except LLMError as exc:
        raise IntentClassifierError(str(exc), retryable=exc.status_code is None or exc.status_code >= 500) from exc
    finally:
        logger.info(
            "Timing",
            extra={
                "context": {
                    "stage": "intent_llm_ms",
                    "elapsed_ms": round((time.monotonic() - started) * 1000, 2),
                    "model_name": settings.intent_model,
                }
            },
        )
    return parse_llm_answer(response.content)


def classify_intent(message: str, provider: Optional[LLMProvider] = None) -> IntentResult:
    """Classify a customer message. Keyword hits skip the LLM.

    The dialog works without an intent, so classifier failures degrade to
    OTHER instead of failing the message.
    """
    keyword_intent = classify_by_keywords(message)
    if keyword_intent is not None:
        return IntentResult(intent=keyword_intent, confidence=1.0, source="keyword")

    provider = provider or get_llm_provider()
    if provider is None:
        return IntentResult(intent=Intent.OTHER, confidence=0.0, source="fallback")

    try:
        result = classify_with_llm(message, provider)
    except IntentClassifierError as exc:
        logger.warning(f"Intent classification failed: {exc}", extra={"context": {"retryable": exc.retryable}})
        return IntentResult(intent=Intent.OTHER, confidence=0.0, source="fallback")

    if result.confidence < settings.intent_min_confidence:
        logger.debug(f"Low-confidence intent ignored: {result.intent.value} ({result.confidence})")
        return IntentResult(intent=Intent.OTHER, confidence=result.confidence, source="llm")
    return result
