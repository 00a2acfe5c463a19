from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Optional


@dataclass
class HistoryRow:
    """One persisted message, as the flow adapters see it (newest first)."""

    sender: str  # user, bot
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    intent: Optional[str] = None
    created_at: Optional[datetime] = None


def iter_bot_metadata(rows: Iterable[HistoryRow]) -> Iterable[Dict[str, Any]]:
    for row in rows:
        if row.sender == "bot" and isinstance(row.metadata, dict):
            yield row.metadata


def find_latest_bot_metadata(rows: Iterable[HistoryRow], key: str) -> Optional[Dict[str, Any]]:
    """Metadata of the newest bot turn that carries ``key``."""
    for metadata in iter_bot_metadata(rows):
        if key in metadata:
            return metadata
    return None


def string_or_none(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None
