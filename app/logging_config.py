"""JSON logging for the chat turns service.

Records carry an optional ``context`` dict. Credentials and customer identity
factors are masked before a record is written, so call sites may pass the
dicts they already hold.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

LOGGER_NAMESPACE = "chat_turns"
MAX_LOGGED_TEXT_CHARS = 200
REDACTED = "[redacted]"

SENSITIVE_CONTEXT_KEYS = frozenset(
    {
        "accesstoken",
        "access_token",
        "authorization",
        "api_key",
        "secret",
        "signature",
        "x-bot-signature",
        "dni",
        "phone",
        "name",
        "last_name",
        "identity",
    }
)


def redact_context(value: Any) -> Any:
    """Copy of ``value`` with sensitive keys masked at any depth."""
    if isinstance(value, dict):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_CONTEXT_KEYS else redact_context(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_context(item) for item in value]
    return value


class JSONFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, context, exception."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            payload["context"] = redact_context(context)

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for existing in root.handlers[:]:
        root.removeHandler(existing)

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(JSONFormatter())
    root.addHandler(stream)

    # Client libraries log every request line at INFO.
    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


def truncate_for_log(text: str | None, max_chars: int = MAX_LOGGED_TEXT_CHARS) -> str:
    if not text:
        return ""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


class LoggerAdapter(logging.LoggerAdapter):
    """Binds request id and conversation id; per-call ``context=`` is merged on top."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        call_context = kwargs.pop("context", None) or {}
        merged = {**(self.extra or {}), **call_context}
        if merged:
            kwargs["extra"] = {**kwargs.get("extra", {}), "context": merged}
        return msg, kwargs
