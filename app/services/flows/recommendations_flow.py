"""Category and volume disambiguation for broad franchise recommendations."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from app.services import responses
from app.services.flows.history import HistoryRow, string_or_none
from app.services.flows.state_machine import FlowStateMachine
from app.services.recommendation_signals import (
    DisambiguationDecision,
    detect_franchises,
    detect_recommendation_types,
    format_category_label,
    franchise_label,
    franchise_query,
    resolve_volume_signals,
    suggested_type_options,
)
from app.services.responses import FlowReply

FLOW_STATE_KEY = "recommendationsFlowState"
FLOW_FRANCHISE_KEY = "recommendationsFlowFranchise"
FLOW_CATEGORY_HINT_KEY = "recommendationsFlowCategoryHint"

VOLUME_CATEGORIES = frozenset({"mangas", "comics"})

POLITE_CLOSING_PATTERN = re.compile(
    r"^(?:gracias(?:\s+por\s+la\s+ayuda)?|muchas\s+gracias|ok\s+gracias|genial\s+gracias"
    r"|perfecto\s+gracias|dale\s+gracias)\s*$",
    re.I,
)


class RecommendationsFlowState(str, Enum):
    AWAITING_CATEGORY_OR_VOLUME = "awaiting_category_or_volume"
    AWAITING_VOLUME_DETAIL = "awaiting_volume_detail"


_CATEGORY = RecommendationsFlowState.AWAITING_CATEGORY_OR_VOLUME
_VOLUME = RecommendationsFlowState.AWAITING_VOLUME_DETAIL

recommendations_flow = FlowStateMachine(
    "recommendations",
    {
        None: frozenset({None, _CATEGORY, _VOLUME}),
        _CATEGORY: frozenset({None, _CATEGORY, _VOLUME}),
        _VOLUME: frozenset({None, _VOLUME}),
    },
)


@dataclass
class RecommendationsFlowSnapshot:
    state: Optional[RecommendationsFlowState] = None
    franchise: Optional[str] = None
    category_hint: Optional[str] = None


@dataclass
class RecommendationFollowup:
    requested_type: Optional[str] = None
    volume_number: Optional[int] = None
    wants_latest: bool = False
    wants_start: bool = False
    mentioned_franchise: Optional[str] = None

    @property
    def has_volume_selection(self) -> bool:
        return bool(self.volume_number) or self.wants_latest or self.wants_start

    @property
    def has_signals(self) -> bool:
        return bool(self.requested_type) or self.has_volume_selection or bool(self.mentioned_franchise)


@dataclass
class RecommendationsFlowOutcome:
    """Either a reply to send now, or a rewritten query for the normal pipeline."""

    reply: Optional[FlowReply]
    rewritten_text: str
    entities: List[str] = field(default_factory=list)
    next: RecommendationsFlowSnapshot = field(default_factory=RecommendationsFlowSnapshot)
    resolved: bool = False


def resolve_recommendations_flow_from_history(rows: Sequence[HistoryRow]) -> RecommendationsFlowSnapshot:
    for row in rows:
        if row.sender != "bot" or not isinstance(row.metadata, dict):
            continue
        if FLOW_STATE_KEY not in row.metadata:
            continue
        return RecommendationsFlowSnapshot(
            state=recommendations_flow.parse(row.metadata[FLOW_STATE_KEY], RecommendationsFlowState),
            franchise=string_or_none(row.metadata.get(FLOW_FRANCHISE_KEY)),
            category_hint=string_or_none(row.metadata.get(FLOW_CATEGORY_HINT_KEY)),
        )
    return RecommendationsFlowSnapshot()


def resolve_recommendation_followup(text: str, entities: Sequence[str]) -> RecommendationFollowup:
    types = detect_recommendation_types(text, entities)
    franchises = detect_franchises(text, entities)
    volume = resolve_volume_signals(text)
    return RecommendationFollowup(
        requested_type=types[0] if types else None,
        volume_number=volume.volume_number,
        wants_latest=volume.wants_latest,
        wants_start=volume.wants_start,
        mentioned_franchise=franchises[0] if franchises else None,
    )


def is_polite_closing(text: str) -> bool:
    return bool(POLITE_CLOSING_PATTERN.match(re.sub(r"\s+", " ", (text or "").strip())))


def should_continue_recommendations_flow(
    state: Optional[RecommendationsFlowState], text: str, entities: Sequence[str]
) -> bool:
    if state is None or is_polite_closing(text):
        return False
    return resolve_recommendation_followup(text, entities).has_signals


def build_recommendations_rewrite_text(
    franchise: str,
    category_hint: Optional[str],
    volume_number: Optional[int] = None,
    wants_latest: bool = False,
    wants_start: bool = False,
) -> str:
    base = f"recomendame {format_category_label(category_hint)} de {franchise_query(franchise)}"
    if volume_number:
        return f"{base} tomo {volume_number}"
    if wants_start:
        return f"{base} desde el inicio"
    if wants_latest:
        return f"{base} ultimos lanzamientos"
    return base


def _resolved(
    current: RecommendationsFlowSnapshot,
    franchise: str,
    category_hint: Optional[str],
    followup: RecommendationFollowup,
) -> RecommendationsFlowOutcome:
    recommendations_flow.transition(current.state, None)
    return RecommendationsFlowOutcome(
        reply=None,
        rewritten_text=build_recommendations_rewrite_text(
            franchise,
            category_hint,
            followup.volume_number,
            followup.wants_latest,
            followup.wants_start,
        ),
        entities=[franchise_query(franchise)],
        next=RecommendationsFlowSnapshot(),
        resolved=True,
    )


def _ask(
    current: RecommendationsFlowSnapshot,
    reply: FlowReply,
    text: str,
    entities: Sequence[str],
    next_snapshot: RecommendationsFlowSnapshot,
) -> RecommendationsFlowOutcome:
    recommendations_flow.transition(current.state, next_snapshot.state)
    return RecommendationsFlowOutcome(reply=reply, rewritten_text=text, entities=list(entities), next=next_snapshot)


def handle_pending_recommendations_flow(
    current: RecommendationsFlowSnapshot, text: str, entities: Sequence[str]
) -> RecommendationsFlowOutcome:
    followup = resolve_recommendation_followup(text, entities)

    if not followup.has_signals:
        return RecommendationsFlowOutcome(reply=None, rewritten_text=text, entities=list(entities), next=current)

    franchise = followup.mentioned_franchise or current.franchise
    if not franchise or current.state is None:
        return RecommendationsFlowOutcome(reply=None, rewritten_text=text, entities=list(entities))

    if current.state == _CATEGORY:
        category_hint = followup.requested_type or current.category_hint
        if followup.has_volume_selection:
            return _resolved(current, franchise, category_hint, followup)
        if category_hint in VOLUME_CATEGORIES:
            return _ask(
                current,
                responses.recommendations_volume_disambiguation(
                    franchise_label(franchise), format_category_label(category_hint)
                ),
                text,
                entities,
                RecommendationsFlowSnapshot(_VOLUME, franchise, category_hint),
            )
        if category_hint:
            return _resolved(current, franchise, category_hint, followup)
        return _ask(
            current,
            responses.recommendations_franchise_disambiguation(franchise_label(franchise), suggested_type_options([])),
            text,
            entities,
            RecommendationsFlowSnapshot(_CATEGORY, franchise, None),
        )

    category_hint = current.category_hint or followup.requested_type
    if followup.has_volume_selection:
        return _resolved(current, franchise, category_hint, followup)
    return _ask(
        current,
        responses.recommendations_volume_disambiguation(franchise_label(franchise), format_category_label(category_hint)),
        text,
        entities,
        RecommendationsFlowSnapshot(_VOLUME, franchise, category_hint),
    )


def build_disambiguation_reply(decision: DisambiguationDecision) -> FlowReply:
    label = franchise_label(decision.franchise or "")
    if decision.reason == "volume_scope":
        category = next((t for t in decision.suggested_types if t in VOLUME_CATEGORIES), None)
        return responses.recommendations_volume_disambiguation(label, format_category_label(category))
    return responses.recommendations_franchise_disambiguation(
        label, suggested_type_options(decision.suggested_types), decision.total_candidates
    )


def snapshot_from_disambiguation(decision: DisambiguationDecision) -> RecommendationsFlowSnapshot:
    """Flow state to persist after asking a disambiguation question."""
    if decision.reason == "volume_scope":
        category = next((t for t in decision.suggested_types if t in VOLUME_CATEGORIES), None)
        return RecommendationsFlowSnapshot(_VOLUME, decision.franchise, category)
    return RecommendationsFlowSnapshot(_CATEGORY, decision.franchise, None)


def build_recommendations_flow_metadata(snapshot: RecommendationsFlowSnapshot) -> Dict[str, Any]:
    return {
        FLOW_STATE_KEY: snapshot.state.value if snapshot.state else None,
        FLOW_FRANCHISE_KEY: snapshot.franchise,
        FLOW_CATEGORY_HINT_KEY: snapshot.category_hint,
    }
