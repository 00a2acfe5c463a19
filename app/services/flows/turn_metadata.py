from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

METADATA_VERSION = "1"


@dataclass
class PipelineTelemetry:
    llm_attempts: int = 0
    tool_attempts: int = 0
    fallback_reasons: List[str] = field(default_factory=list)

    def add_fallback(self, reason: str) -> None:
        self.fallback_reasons.append(reason)


def build_turn_metadata(
    *,
    request_id: str,
    external_event_id: str,
    routed_intent: str,
    effective_intent: str,
    confidence: float,
    entities_count: int,
    sentiment: str,
    auth_present: bool,
    requires_auth: bool,
    telemetry: PipelineTelemetry,
    context_types: Optional[List[str]] = None,
    llm_metadata: Optional[Dict[str, Any]] = None,
    flow_metadata: Optional[Dict[str, Any]] = None,
    catalog_snapshot: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """Metadata stored on the bot turn. Readers treat every key as optional."""
    metadata: Dict[str, Any] = {
        "metadataVersion": METADATA_VERSION,
        "requestId": request_id,
        "externalEventId": external_event_id,
        "routedIntent": routed_intent,
        "effectiveIntent": effective_intent,
        "predictedConfidence": confidence,
        "predictedEntitiesCount": entities_count,
        "sentiment": sentiment,
        "authPresent": auth_present,
        "requiresAuth": requires_auth,
        "contextTypes": list(context_types or []),
        "llmAttempts": telemetry.llm_attempts,
        "toolAttempts": telemetry.tool_attempts,
        "pipelineFallbackCount": len(telemetry.fallback_reasons),
        "pipelineFallbackReasons": list(telemetry.fallback_reasons),
    }
    if llm_metadata:
        metadata.update(llm_metadata)
    if flow_metadata:
        metadata.update(flow_metadata)
    if catalog_snapshot:
        metadata["catalogSnapshot"] = catalog_snapshot
    return metadata
