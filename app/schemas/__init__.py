from app.schemas.chat import ChatRequest, ChatResponse

__all__ = ["ChatRequest", "ChatResponse"]
