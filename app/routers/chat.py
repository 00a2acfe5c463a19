import hashlib
import json
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from app.database import get_db
from app.schemas.chat import ChatRequest, ChatResponse
from app.services.errors import ContractError
from app.services.orchestrator import OrchestratorDeps, build_default_deps, handle_incoming_message

router = APIRouter()

MAX_EXTERNAL_EVENT_ID_CHARS = 255


def get_orchestrator_deps() -> OrchestratorDeps:
    return build_default_deps()


def resolve_external_event_id(explicit: Optional[str], request: ChatRequest) -> str:
    """Header value when present, otherwise a hash of the payload so retries collapse."""
    if explicit and explicit.strip():
        return explicit.strip()[:MAX_EXTERNAL_EVENT_ID_CHARS]
    candidate = json.dumps(
        {
            "source": request.source,
            "userId": request.userId,
            "conversationId": request.conversationId,
            "text": request.text,
            "currency": request.currency,
            "locale": request.locale,
        },
        ensure_ascii=False,
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(candidate.encode("utf-8")).hexdigest()


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


@router.post("/chat", response_model=ChatResponse, response_model_exclude_none=True)
def handle_chat(
    payload: ChatRequest,
    http_request: Request,
    db: Session = Depends(get_db),
    deps: OrchestratorDeps = Depends(get_orchestrator_deps),
    x_external_event_id: Optional[str] = Header(default=None),
    x_idempotency_key: Optional[str] = Header(default=None),
    x_request_id: Optional[str] = Header(default=None),
    authorization: Optional[str] = Header(default=None),
):
    """Handle one inbound chat message from the web widget or WhatsApp."""
    if not payload.accessToken:
        payload.accessToken = _bearer_token(authorization)

    request_id = (x_request_id or "").strip() or str(uuid.uuid4())
    external_event_id = resolve_external_event_id(x_external_event_id or x_idempotency_key, payload)
    client_ip = http_request.client.host if http_request.client else None

    try:
        return handle_incoming_message(
            db,
            payload,
            request_id=request_id,
            external_event_id=external_event_id,
            client_ip=client_ip,
            deps=deps,
        )
    except ContractError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
