"""Last-line sanitation of every user-visible message."""

import re

from app.services.responses import GENERIC_ERROR_MESSAGE

MAX_OUTPUT_CHARS = 2000
REDACTED = "[oculto]"

CONTROL_CHARS_PATTERN = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
HTML_TAG_PATTERN = re.compile(r"<\s*/?\s*[a-zA-Z][^>]*>")
SCRIPT_BLOCK_PATTERN = re.compile(r"<\s*(script|style)[^>]*>.*?<\s*/\s*\1\s*>", re.I | re.S)

SECRET_PATTERNS = (
    re.compile(r"\bsk-[A-Za-z0-9_\-]{16,}\b"),
    re.compile(r"\bBearer\s+[A-Za-z0-9_\-.=]{16,}", re.I),
    re.compile(r"\b(?:api[_-]?key|secret|token|password)\s*[:=]\s*\S+", re.I),
    re.compile(r"\beyJ[A-Za-z0-9_\-]{10,}\.[A-Za-z0-9_\-]{10,}\.[A-Za-z0-9_\-]{10,}\b"),
)

# A stack trace or a raw SQL error means something internal leaked; drop the whole reply.
INTERNAL_ERROR_PATTERNS = (
    re.compile(r"Traceback \(most recent call last\)"),
    re.compile(r"^\s*File \".+\", line \d+", re.M),
    re.compile(r"^\s*at [\w.$<>]+ \(.+:\d+:\d+\)", re.M),
    re.compile(r"\b(?:psycopg2|sqlalchemy)\.\w*(?:Error|Exception)\b", re.I),
    re.compile(r"\bsyntax error at or near\b", re.I),
    re.compile(r"\b(?:duplicate key value violates|relation \"\w+\" does not exist)\b", re.I),
)

MULTI_BLANK_LINES = re.compile(r"\n{3,}")


def sanitize_output(message: str | None, max_chars: int = MAX_OUTPUT_CHARS) -> str:
    if not message:
        return GENERIC_ERROR_MESSAGE

    if any(pattern.search(message) for pattern in INTERNAL_ERROR_PATTERNS):
        return GENERIC_ERROR_MESSAGE

    cleaned = SCRIPT_BLOCK_PATTERN.sub("", message)
    cleaned = HTML_TAG_PATTERN.sub("", cleaned)
    cleaned = CONTROL_CHARS_PATTERN.sub("", cleaned)
    for pattern in SECRET_PATTERNS:
        cleaned = pattern.sub(REDACTED, cleaned)
    cleaned = MULTI_BLANK_LINES.sub("\n\n", cleaned).strip()

    if len(cleaned) > max_chars:
        cleaned = cleaned[: max_chars - 3].rstrip() + "..."
    return cleaned or GENERIC_ERROR_MESSAGE


def sanitize_user_text(text: str | None) -> str:
    """Inbound text: control characters and HTML removed, whitespace trimmed."""
    if not text:
        return ""
    cleaned = HTML_TAG_PATTERN.sub("", text)
    cleaned = CONTROL_CHARS_PATTERN.sub("", cleaned)
    return cleaned.strip()
