"""Intent classifier: ordered static rules, then one LLM fallback call.

The static table is evaluated top to bottom and the first matching rule
wins, so cheap, unambiguous phrasings never reach the LLM.  Order matters:
off-topic guards run before anything else so that "what is the capital of
France?" is not mistaken for a medical "what is" question.

The fallback asks the LLM for ``{"intent": "<label>"}`` in JSON mode.
Anything unusable (unknown label, bad JSON, provider error) maps to
``other``, which makes :func:`classify` total.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from clinic_assistant.engine.resolver import extract_price_limit
from clinic_assistant.models import IntentLabel
from clinic_assistant.prompts import get_classifier_prompt
from clinic_assistant.services.llm_provider import ChatResponse
from clinic_assistant.utils import sanitize_for_log

logger = logging.getLogger(__name__)


class ChatModel(Protocol):
    async def chat(self, messages: list[dict[str, str]], *, json_mode: bool = False) -> ChatResponse: ...


# ── Keyword sets ────────────────────────────────────────────────────

_TECH_WORDS = [
    "program", "code", "javascript", "python", "json", "api", "you are ai",
    "you are an ai", "convert", "write a", "algorithm", "function",
]
_GENERAL_KNOWLEDGE = [
    "capital of", "weather", "sports", "movie", "movies", "recipe", "math",
    "calculate", "politics", "celebrity", "song", "lyrics",
]
_BOOKING_PHRASES = [
    "book appointment", "book an appointment", "schedule appointment",
    "schedule an appointment", "book consultation", "book a consultation",
    "appointment with",
]
_CONFIRMATIONS = {"yes", "ok", "okay", "yeah", "sure"}
_CLINIC_LOCATION = [
    "clinic kha hai", "clinic kahan hai", "clinic address", "where is the clinic",
    "clinic location", "opening hours", "clinic timings", "clinic timing",
]
_COST_PHRASES = ["cost of", "price of", "how much is", "how much does", "how much for"]
_PHYSICIAN_PHRASES = [
    "who is dr", "about doctor", "about dr", "which doctors", "which doctor",
    "doctors for", "doctors who", "your doctors", "all doctors", "available doctors",
    "list of doctors",
]
_SERVICE_LIST = [
    "all services", "list of treatments", "all treatments", "show all treatments",
    "what services", "services do you offer", "treatments do you offer",
]
_QUESTION_PREFIXES = ("tell me about", "what is", "what are", "explain", "describe")
_MEDICAL_NOUNS = [
    "thyroid", "diabetes", "hypertension", "blood pressure", "acne", "eczema",
    "psoriasis", "hairfall", "hair fall", "migraine", "asthma", "cancer", "fever",
    "cold", "flu", "pimple", "pimples", "weight loss", "pigmentation", "rosacea",
]

_ORDINALS = (
    "one|two|three|four|five|six|seven|eight|nine|ten|"
    "first|second|third|fourth|fifth"
)
_SELECTION_RE = re.compile(rf"^(?:treatment\s*|option\s*)?(?:\d+|{_ORDINALS})$")
_PHYSICIAN_NAME_RE = re.compile(r"\b(?:dr\.?|doctor)\s+[a-z]{3,}")
_JSON_OBJECT_RE = re.compile(r"\{.*?\}", re.DOTALL)


def _has_any_word(text: str, words: list[str]) -> bool:
    return any(re.search(rf"\b{re.escape(word)}\b", text) for word in words)


def _has_any_phrase(text: str, phrases: list[str]) -> bool:
    return any(phrase in text for phrase in phrases)


# ── Rule table ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class StaticRule:
    name: str
    predicate: Callable[[str], bool]
    label: IntentLabel


def is_selection_reply(text: str) -> bool:
    """True for bare list picks such as "2", "treatment 3" or "first"."""
    return _SELECTION_RE.match(" ".join((text or "").lower().split()).strip(" .!")) is not None


def _is_medical_question(text: str) -> bool:
    return text.startswith(_QUESTION_PREFIXES) and not _has_any_word(text, _GENERAL_KNOWLEDGE)


def _is_physician_query(text: str) -> bool:
    if _has_any_phrase(text, _PHYSICIAN_PHRASES):
        return True
    return _PHYSICIAN_NAME_RE.search(text) is not None and "appointment" not in text


STATIC_RULES: list[StaticRule] = [
    StaticRule("tech_request", lambda t: _has_any_word(t, _TECH_WORDS), IntentLabel.OFF_TOPIC),
    StaticRule(
        "general_knowledge",
        lambda t: _has_any_word(t, _GENERAL_KNOWLEDGE) or "2+2" in t,
        IntentLabel.OFF_TOPIC,
    ),
    StaticRule("explicit_booking", lambda t: _has_any_phrase(t, _BOOKING_PHRASES), IntentLabel.APPOINTMENT_BOOKING),
    StaticRule("confirmation", lambda t: t.strip(" .!") in _CONFIRMATIONS, IntentLabel.APPOINTMENT_BOOKING),
    StaticRule("clinic_location", lambda t: _has_any_phrase(t, _CLINIC_LOCATION), IntentLabel.CLINIC_INFO),
    StaticRule(
        "cost_phrase",
        lambda t: _has_any_phrase(t, _COST_PHRASES) or extract_price_limit(t) is not None,
        IntentLabel.COST_INQUIRY,
    ),
    StaticRule("physician", _is_physician_query, IntentLabel.DOCTOR_INQUIRY),
    StaticRule("service_list", lambda t: _has_any_phrase(t, _SERVICE_LIST), IntentLabel.TREATMENT_LIST),
    StaticRule("treatment_selection", is_selection_reply, IntentLabel.TREATMENT_SELECTION),
    StaticRule("medical_question", _is_medical_question, IntentLabel.GENERAL_INFO),
    StaticRule("medical_noun", lambda t: _has_any_word(t, _MEDICAL_NOUNS), IntentLabel.GENERAL_INFO),
]


def static_intent(query: str) -> IntentLabel | None:
    """Label from the first matching static rule, or ``None``."""
    text = " ".join((query or "").lower().split())
    if not text:
        return None
    for rule in STATIC_RULES:
        if rule.predicate(text):
            logger.debug("Static rule %s -> %s", rule.name, rule.label.value)
            return rule.label
    return None


# ── LLM fallback ────────────────────────────────────────────────────


def parse_intent_json(raw: str) -> IntentLabel:
    """Extract ``{"intent": ...}`` from an LLM reply; ``other`` when unusable."""
    match = _JSON_OBJECT_RE.search(raw or "")
    if not match:
        return IntentLabel.OTHER
    try:
        data = json.loads(match.group(0))
    except ValueError:
        return IntentLabel.OTHER
    if not isinstance(data, dict):
        return IntentLabel.OTHER
    label = IntentLabel.parse(data.get("intent", ""))
    # ``error`` is reserved for replies produced by the failure path
    return IntentLabel.OTHER if label is IntentLabel.ERROR else label


async def classify(query: str, llm: ChatModel | None = None) -> IntentLabel:
    """Assign exactly one intent label to *query*.  Never raises."""
    label = static_intent(query)
    if label is not None:
        return label
    if llm is None or not (query or "").strip():
        return IntentLabel.OTHER

    messages = [
        {"role": "system", "content": get_classifier_prompt()},
        {"role": "user", "content": query},
    ]
    try:
        response = await llm.chat(messages, json_mode=True)
    except Exception as exc:
        logger.warning("LLM intent classification failed (%s); using 'other'", type(exc).__name__)
        return IntentLabel.OTHER

    label = parse_intent_json(response.content)
    logger.debug("LLM classified %r as %s", sanitize_for_log(query), label.value)
    return label
