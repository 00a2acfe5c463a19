from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class ChatRequest(BaseModel):
    """Inbound chat payload. Field checks live in the orchestrator so they surface as 400s."""

    model_config = ConfigDict(extra="ignore")

    source: Optional[str] = None
    conversationId: Optional[str] = None
    userId: Optional[str] = None
    accessToken: Optional[str] = None
    text: Optional[Any] = None
    currency: Optional[str] = None
    locale: Optional[str] = None


class ChatResponse(BaseModel):
    ok: bool
    message: str
    conversationId: Optional[str] = None
    intent: Optional[str] = None
    responseId: Optional[str] = None
    requiresAuth: Optional[bool] = None
