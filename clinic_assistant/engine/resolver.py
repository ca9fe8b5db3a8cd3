"""Treatment resolver: tree flattening, name matching and price filtering.

Everything here is pure (no I/O) and operates on the flattened treatment
list produced by :func:`flatten`.

Matching tiers in :func:`find_specific`, first hit wins:

  1. **exact**      normalized query (filler words removed) equals a name
  2. **alias**      the query mentions a known alias; the first node whose
                    name carries the canonical term or any alias wins
  3. **substring**  query contains the name, or the name contains the query
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from clinic_assistant.models import TreatmentNode, parse_doctor_ids

logger = logging.getLogger(__name__)

__all__ = [
    "ALIASES",
    "MAX_TREE_DEPTH",
    "display_name",
    "extract_price_limit",
    "filter_under_price",
    "find_specific",
    "flatten",
    "is_specific_cost_query",
    "normalize",
    "parse_doctor_ids",
    "priced",
    "search",
    "strip_filler",
    "treatments_for_doctor",
]

MAX_TREE_DEPTH = 32

_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_SPACES_RE = re.compile(r"\s+")
_FILLER_RE = re.compile(r"\b(what|is|the|cost|of|price|for|in|treatment|therapy)\b")

# canonical term -> aliases patients actually type
ALIASES: dict[str, list[str]] = {
    "laser hair removal": ["laser hair reduction", "hair laser", "lhr", "laser hair"],
    "botox": ["anti wrinkle injection", "botulinum toxin"],
    "facelift": ["anti wrinkle injection", "dermal filler", "hifu", "botox", "face lift"],
    "fillers": ["dermal fillers", "dermal filler"],
    "acne treatment": ["acne", "pimple treatment"],
    "hair loss": ["hairfall", "hair fall"],
}

_PRICE_LIMIT_PATTERNS = [
    re.compile(r"under\s*(?:₹|rs\.?)?\s*(\d+)", re.IGNORECASE),
    re.compile(r"below\s*(?:₹|rs\.?)?\s*(\d+)", re.IGNORECASE),
    re.compile(r"less\s*than\s*(?:₹|rs\.?)?\s*(\d+)", re.IGNORECASE),
    re.compile(r"maximum\s*(?:₹|rs\.?)?\s*(\d+)", re.IGNORECASE),
    re.compile(r"max\s*(?:₹|rs\.?)?\s*(\d+)", re.IGNORECASE),
    re.compile(r"up\s*to\s*(?:₹|rs\.?)?\s*(\d+)", re.IGNORECASE),
]

_SPECIFIC_COST_PHRASES = (
    "cost of",
    "price of",
    "how much is",
    "how much does",
    "what is the cost",
    "what does it cost",
    "price for",
    "cost for",
)

_SEARCH_STOPWORDS = {
    "how", "much", "does", "cost", "costs", "price", "prices", "what", "which", "the",
    "for", "are", "you", "your", "treatment", "treatments", "tell", "about", "with",
    "and", "compare", "between", "versus", "difference", "offer", "have", "can",
    "best", "who", "doctor", "doctors", "perform", "performs", "clinic",
}

# CRM names that read badly in a reply
_FRIENDLY_NAMES = {
    "anti wrinkle injection": "Botox Treatment",
    "lhr": "Laser Hair Reduction",
}


# ── Text helpers ────────────────────────────────────────────────────


def normalize(text: str | None) -> str:
    """Lowercase, replace non-alphanumerics with spaces, collapse whitespace."""
    lowered = (text or "").lower()
    return _SPACES_RE.sub(" ", _NON_ALNUM_RE.sub(" ", lowered)).strip()


def strip_filler(query: str) -> str:
    """Normalized query with question filler ("what is the cost of") removed."""
    return normalize(_FILLER_RE.sub(" ", normalize(query)))


def display_name(node: TreatmentNode) -> str:
    return _FRIENDLY_NAMES.get(normalize(node.display_name), node.label)


def _names(node: TreatmentNode) -> list[str]:
    return [n for n in (normalize(node.display_name), normalize(node.full_name)) if n]


def _contains_phrase(haystack: str, phrase: str) -> bool:
    return bool(phrase) and re.search(rf"\b{re.escape(phrase)}\b", haystack) is not None


# ── Tree flattening ─────────────────────────────────────────────────


def flatten(roots: Iterable[TreatmentNode], *, max_depth: int = MAX_TREE_DEPTH) -> list[TreatmentNode]:
    """Pre-order walk of the treatment forest.

    Uses an explicit stack so deep trees cannot exhaust the interpreter
    stack.  A node object seen twice (cyclic or shared subtree) is emitted
    once; subtrees below ``max_depth`` are dropped with a warning.
    """
    result: list[TreatmentNode] = []
    seen: set[int] = set()
    stack: list[tuple[TreatmentNode, int]] = [(node, 0) for node in reversed(list(roots))]

    while stack:
        node, depth = stack.pop()
        marker = id(node)
        if marker in seen:
            logger.warning("Treatment %s reached twice while flattening; skipped", node.id)
            continue
        seen.add(marker)
        result.append(node)

        if not node.children:
            continue
        if depth + 1 > max_depth:
            logger.warning("Treatment tree deeper than %d below node %s; truncated", max_depth, node.id)
            continue
        for child in reversed(node.children):
            stack.append((child, depth + 1))

    return result


# ── Matching ────────────────────────────────────────────────────────


def _alias_match(cleaned: str, flat: list[TreatmentNode]) -> TreatmentNode | None:
    for canonical, aliases in ALIASES.items():
        keys = [canonical, *aliases]
        if not any(cleaned == key or _contains_phrase(cleaned, key) for key in keys):
            continue

        candidates = [
            node for node in flat
            if any(key in name for name in _names(node) for key in keys)
        ]
        if not candidates:
            continue
        # Prefer a node that names the canonical term itself
        for node in candidates:
            if any(canonical in name for name in _names(node)):
                return node
        return candidates[0]
    return None


def find_specific(query: str, flat: list[TreatmentNode]) -> TreatmentNode | None:
    """Resolve a free-text query to at most one treatment node."""
    cleaned = strip_filler(query)
    if not cleaned:
        return None

    for node in flat:
        if cleaned in _names(node):
            logger.debug("Exact match %r -> %s", cleaned, node.label)
            return node

    node = _alias_match(cleaned, flat)
    if node is not None:
        logger.debug("Alias match %r -> %s", cleaned, node.label)
        return node

    for node in flat:
        for name in _names(node):
            if cleaned in name or name in cleaned:
                logger.debug("Substring match %r -> %s", cleaned, node.label)
                return node
    return None


def search(query: str, flat: list[TreatmentNode]) -> list[TreatmentNode]:
    """Nodes whose names contain any significant query term, best matches first.

    Ties keep tree order.
    """
    terms = [t for t in normalize(query).split() if len(t) > 2 and t not in _SEARCH_STOPWORDS]
    if not terms:
        return []
    scored = []
    for position, node in enumerate(flat):
        haystack = normalize(f"{node.display_name} {node.full_name}")
        score = sum(1 for term in terms if term in haystack)
        if score:
            scored.append((-score, position, node))
    return [node for _, _, node in sorted(scored, key=lambda item: item[:2])]


def priced(flat: list[TreatmentNode]) -> list[TreatmentNode]:
    return [node for node in flat if node.has_price]


def treatments_for_doctor(doctor_id: int, flat: list[TreatmentNode]) -> list[TreatmentNode]:
    return [node for node in flat if doctor_id in node.doctor_ids]


# ── Prices ──────────────────────────────────────────────────────────


def extract_price_limit(message: str) -> int | None:
    """Return the upper price bound a message asks for ("under ₹5000"), if any."""
    for pattern in _PRICE_LIMIT_PATTERNS:
        match = pattern.search(message or "")
        if match:
            return int(match.group(1))
    return None


def filter_under_price(flat: list[TreatmentNode], max_price: int) -> list[TreatmentNode]:
    """Nodes with an integer price strictly below ``max_price``."""
    return [
        node for node in flat
        if node.price_value is not None and node.price_value < max_price
    ]


def is_specific_cost_query(message: str) -> bool:
    lowered = (message or "").lower()
    return any(phrase in lowered for phrase in _SPECIFIC_COST_PHRASES)
