"""Short-term memory of the last recommendation shown in a conversation.

A short acknowledgement ("dale") or a continuation phrase ("algo mas
barato") is rewritten into a franchise query only when the previous bot
turn explicitly offered that franchise and its catalog snapshot is fresh.
Stale or unprompted memory never rewrites the user's text.
"""

import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from app.services.flows.history import HistoryRow, int_or_none, string_or_none
from app.services.recommendation_signals import detect_franchises, detect_recommendation_types, franchise_query
from app.services.text_normalize import contains_term, normalize_for_search

LAST_FRANCHISE_KEY = "recommendationsLastFranchise"
LAST_TYPE_KEY = "recommendationsLastType"
PROMPTED_FRANCHISE_KEY = "recommendationsPromptedFranchise"
SNAPSHOT_TIMESTAMP_KEY = "recommendationsSnapshotTimestamp"
SNAPSHOT_SOURCE_KEY = "recommendationsSnapshotSource"
SNAPSHOT_ITEM_COUNT_KEY = "recommendationsSnapshotItemCount"

DEFAULT_SNAPSHOT_MAX_AGE_MS = 5 * 60 * 1000

SHORT_ACK_TERMS = frozenset(
    {
        "si", "sii", "seh", "sep", "yes", "dale", "ok", "okey", "oka", "okay", "bueno", "va", "va bien",
        "listo", "joya", "de una", "barbaro", "genial", "perfecto", "excelente", "claro", "obvio", "seguro",
        "por supuesto", "desde ya", "no", "nop", "nope", "negativo", "no gracias",
    }
)

# Plain "barato" is a new request, not a continuation.
CONTINUATION_PATTERNS = (
    re.compile(r"\bmas\s+barat[oa]s?\b"),
    re.compile(r"\balgo\s+mas\b"),
    re.compile(r"\b(?:tenes|tienes)\b"),
    re.compile(r"\bpresupuesto\b"),
)

CATALOG_SIGNAL_PATTERN = re.compile(
    r"\b(?:manga|mangas|comic|comics|figura|figuras|funko|merch|k\s*pop|kpop|booster|tcg|carta|cartas"
    r"|yu\s*gi\s*oh|yugioh|pokemon|evangelion|naruto|chainsaw\s+man|demon\s+slayer|one\s+piece"
    r"|attack\s+on\s+titan|shingeki|boku\s+no\s+hero|dragon\s+ball|jujutsu\s+kaisen|spy\s+family|bleach"
    r"|hunter|kimetsu|my\s+hero\s+academia)\b"
)


@dataclass
class RecommendationsMemory:
    last_franchise: Optional[str] = None
    last_type: Optional[str] = None
    prompted_franchise: Optional[str] = None
    snapshot_timestamp: Optional[int] = None
    snapshot_source: Optional[str] = None
    snapshot_item_count: Optional[int] = None


@dataclass
class MemoryUpdate:
    last_franchise: Optional[str] = None
    last_type: Optional[str] = None
    snapshot_timestamp: Optional[int] = None
    snapshot_source: Optional[str] = None  # recommendations, products
    snapshot_item_count: Optional[int] = None


@dataclass
class ContinuationResolution:
    force_recommendations_intent: bool
    rewritten_text: str
    entities: List[str] = field(default_factory=list)
    rewritten: bool = False


def now_ms() -> int:
    return int(time.time() * 1000)


def resolve_recommendations_memory_from_history(rows: Sequence[HistoryRow]) -> RecommendationsMemory:
    """Each field comes from the newest bot turn that carries its key."""
    values: Dict[str, Any] = {}
    keys = (
        LAST_FRANCHISE_KEY,
        LAST_TYPE_KEY,
        PROMPTED_FRANCHISE_KEY,
        SNAPSHOT_TIMESTAMP_KEY,
        SNAPSHOT_SOURCE_KEY,
        SNAPSHOT_ITEM_COUNT_KEY,
    )
    for row in rows:
        if row.sender != "bot" or not isinstance(row.metadata, dict):
            continue
        for key in keys:
            if key not in values and key in row.metadata:
                values[key] = row.metadata[key]
        if len(values) == len(keys):
            break

    return RecommendationsMemory(
        last_franchise=string_or_none(values.get(LAST_FRANCHISE_KEY)),
        last_type=string_or_none(values.get(LAST_TYPE_KEY)),
        prompted_franchise=string_or_none(values.get(PROMPTED_FRANCHISE_KEY)),
        snapshot_timestamp=int_or_none(values.get(SNAPSHOT_TIMESTAMP_KEY)),
        snapshot_source=string_or_none(values.get(SNAPSHOT_SOURCE_KEY)),
        snapshot_item_count=int_or_none(values.get(SNAPSHOT_ITEM_COUNT_KEY)),
    )


def is_snapshot_fresh(
    memory: RecommendationsMemory, current_ms: int, max_age_ms: int = DEFAULT_SNAPSHOT_MAX_AGE_MS
) -> bool:
    if memory.snapshot_timestamp is None:
        return False
    return 0 <= current_ms - memory.snapshot_timestamp <= max_age_ms


def _append_franchise(text: str, query: str) -> str:
    if contains_term(normalize_for_search(text), normalize_for_search(query)):
        return text
    return f"{text} de {query}"


def _append_entity(entities: Sequence[str], candidate: str) -> List[str]:
    normalized = normalize_for_search(candidate)
    result = list(entities)
    if normalized and all(normalize_for_search(entity) != normalized for entity in entities):
        result.append(candidate)
    return result


def resolve_recommendation_continuation(
    text: str,
    entities: Sequence[str],
    routed_intent: str,
    memory: RecommendationsMemory,
    current_ms: int,
    max_age_ms: int = DEFAULT_SNAPSHOT_MAX_AGE_MS,
) -> ContinuationResolution:
    normalized = normalize_for_search(text)
    explicit_franchises = detect_franchises(text, entities)
    is_short_ack = normalized in SHORT_ACK_TERMS
    has_continuation_phrase = any(pattern.search(normalized) for pattern in CONTINUATION_PATTERNS)
    has_catalog_signals = bool(explicit_franchises) or bool(CATALOG_SIGNAL_PATTERN.search(normalized))

    can_use_memory = memory.prompted_franchise is not None and is_snapshot_fresh(memory, current_ms, max_age_ms)

    continuation_franchise = None
    if not explicit_franchises and can_use_memory:
        if is_short_ack:
            continuation_franchise = memory.prompted_franchise
        elif has_continuation_phrase:
            continuation_franchise = memory.last_franchise or memory.prompted_franchise

    force_intent = routed_intent == "recommendations" or (
        routed_intent == "general" and (has_catalog_signals or continuation_franchise is not None)
    )

    if continuation_franchise is None:
        return ContinuationResolution(force_intent, text, list(entities))

    query = franchise_query(continuation_franchise)
    rewritten_text = f"quiero ver productos de {query}" if is_short_ack else _append_franchise(text, query)
    return ContinuationResolution(force_intent, rewritten_text, _append_entity(entities, query), rewritten=True)


def resolve_memory_update_from_context(
    context_blocks: Sequence[Dict[str, Any]],
    text: str,
    entities: Sequence[str],
    current_ms: int,
) -> Optional[MemoryUpdate]:
    """Memory to store after a turn that showed recommendations or products."""
    by_type = {block.get("contextType"): block.get("contextPayload") or {} for block in context_blocks}

    recommendations = by_type.get("recommendations")
    if isinstance(recommendations, dict) and recommendations.get("products"):
        matched = [f for f in recommendations.get("matchedFranchises") or [] if isinstance(f, str) and f]
        preferences = recommendations.get("preferences") or {}
        types = [t for t in preferences.get("type") or [] if isinstance(t, str) and t]
        detected = detect_franchises(text, entities)
        return MemoryUpdate(
            last_franchise=(matched or detected or [None])[0],
            last_type=types[0] if types else None,
            snapshot_timestamp=current_ms,
            snapshot_source="recommendations",
            snapshot_item_count=len(recommendations["products"]),
        )

    products = by_type.get("products")
    if not isinstance(products, dict) or not products.get("items"):
        return None

    query_text = string_or_none((products.get("resolvedQuery") or {}).get("productName")) or text
    franchises = detect_franchises(query_text, entities)
    types = detect_recommendation_types(text, entities)
    if not franchises and not types:
        return None
    return MemoryUpdate(
        last_franchise=franchises[0] if franchises else None,
        last_type=types[0] if types else None,
        snapshot_timestamp=current_ms,
        snapshot_source="products",
        snapshot_item_count=len(products["items"]),
    )


def build_recommendations_memory_metadata(
    update: Optional[MemoryUpdate], prompted_franchise: Optional[str] = None
) -> Dict[str, Any]:
    if update is None and prompted_franchise is None:
        return {}
    metadata: Dict[str, Any] = {PROMPTED_FRANCHISE_KEY: prompted_franchise}
    if update is not None:
        metadata.update(
            {
                LAST_FRANCHISE_KEY: update.last_franchise,
                LAST_TYPE_KEY: update.last_type,
                SNAPSHOT_TIMESTAMP_KEY: update.snapshot_timestamp,
                SNAPSHOT_SOURCE_KEY: update.snapshot_source,
                SNAPSHOT_ITEM_COUNT_KEY: update.snapshot_item_count,
            }
        )
    return metadata
