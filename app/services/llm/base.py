from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class LLMUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0


@dataclass
class StructuredLLMResponse:
    """Raw JSON text produced under a strict schema, plus provider usage."""

    content: str
    model: str
    usage: LLMUsage = field(default_factory=LLMUsage)
    response_id: Optional[str] = None


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def generate_structured(
        self,
        messages: List[dict],
        model: str,
        schema: Dict[str, Any],
        max_tokens: int,
        timeout_seconds: float,
        idempotency_key: Optional[str] = None,
    ) -> StructuredLLMResponse:
        """Generate a reply constrained to ``schema``.

        Raises RetryableError for timeouts, network errors, 429 and 5xx, and
        ExternalServiceError for other non-success statuses.
        """
        pass
