"""Cheapest / most expensive follow-ups answered from the last catalog snapshot."""

import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence

from app.services.catalog_matcher import CatalogItem
from app.services.flows.history import HistoryRow, string_or_none
from app.services.responses import format_money
from app.services.text_normalize import normalize_for_search

SNAPSHOT_KEY = "catalogSnapshot"
MAX_SNAPSHOT_ITEMS = 10
DEFAULT_THUMBNAIL_URL = "https://entelequia.com.ar/favicon.ico"

CHEAPEST = "cheapest"
MOST_EXPENSIVE = "most_expensive"

CHEAPEST_PATTERNS = (
    re.compile(r"\bmas\s+(?:barat[oa]s?|economic[oa]s?)\b"),
    re.compile(r"\bcual\s+sale\s+menos\b"),
    re.compile(r"\bprecio\s+mas\s+bajo\b"),
    re.compile(r"\b(?:cheapest|precio\s+minimo)\b"),
)
MOST_EXPENSIVE_PATTERNS = (
    re.compile(r"\bmas\s+car[oa]s?\b"),
    re.compile(r"\bcual\s+sale\s+mas\b"),
    re.compile(r"\bprecio\s+mas\s+alto\b"),
)


@dataclass
class CatalogSnapshotItem:
    id: str
    title: str
    productUrl: str
    thumbnailUrl: str
    currency: str
    amount: float


def resolve_price_comparison_request(text: str) -> Optional[str]:
    normalized = normalize_for_search(text)
    if not normalized:
        return None
    if any(pattern.search(normalized) for pattern in CHEAPEST_PATTERNS):
        return CHEAPEST
    if any(pattern.search(normalized) for pattern in MOST_EXPENSIVE_PATTERNS):
        return MOST_EXPENSIVE
    return None


def _http_url(value: Any) -> Optional[str]:
    value = string_or_none(value)
    if value and (value.startswith("https://") or value.startswith("http://")):
        return value
    return None


def parse_catalog_snapshot(value: Any) -> List[CatalogSnapshotItem]:
    """Entries missing an id, title, url, currency or finite amount are dropped."""
    if not isinstance(value, list):
        return []
    parsed = []
    for entry in value:
        if not isinstance(entry, dict):
            continue
        item_id = string_or_none(entry.get("id"))
        title = string_or_none(entry.get("title"))
        product_url = _http_url(entry.get("productUrl"))
        currency = string_or_none(entry.get("currency"))
        amount = entry.get("amount")
        if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount != amount:
            continue
        if not (item_id and title and product_url and currency):
            continue
        parsed.append(
            CatalogSnapshotItem(
                id=item_id,
                title=title,
                productUrl=product_url,
                thumbnailUrl=_http_url(entry.get("thumbnailUrl")) or DEFAULT_THUMBNAIL_URL,
                currency=currency,
                amount=float(amount),
            )
        )
    return parsed


def build_catalog_snapshot(items: Sequence[CatalogItem]) -> List[Dict[str, Any]]:
    """Snapshot entries for the bot turn metadata; only priced items with a url qualify."""
    snapshot = []
    for item in items:
        if item.amount is None or not item.product_url:
            continue
        snapshot.append(
            asdict(
                CatalogSnapshotItem(
                    id=item.id,
                    title=item.title,
                    productUrl=item.product_url,
                    thumbnailUrl=item.thumbnail_url or DEFAULT_THUMBNAIL_URL,
                    currency=item.currency,
                    amount=item.amount,
                )
            )
        )
        if len(snapshot) >= MAX_SNAPSHOT_ITEMS:
            break
    return snapshot


def resolve_latest_catalog_snapshot(rows: Sequence[HistoryRow]) -> List[CatalogSnapshotItem]:
    for row in rows:
        if row.sender != "bot" or not isinstance(row.metadata, dict):
            continue
        parsed = parse_catalog_snapshot(row.metadata.get(SNAPSHOT_KEY))
        if parsed:
            return parsed
    return []


def select_price_comparison_item(request: str, items: Sequence[CatalogSnapshotItem]) -> Optional[CatalogSnapshotItem]:
    """First item wins ties."""
    if not items:
        return None
    selected = items[0]
    for item in items[1:]:
        if request == CHEAPEST and item.amount < selected.amount:
            selected = item
        elif request == MOST_EXPENSIVE and item.amount > selected.amount:
            selected = item
    return selected


def missing_snapshot_message() -> str:
    return (
        "No tengo una lista reciente de productos en esta conversacion. "
        "Si queres, te muestro opciones y te digo al toque cual es el mas barato."
    )


def price_comparison_message(request: str, item: CatalogSnapshotItem, compared_count: int) -> str:
    label = "el mas barato" if request == CHEAPEST else "el mas caro"
    price = format_money(item.amount, item.currency)
    return f'De los {compared_count} productos que te mostre, {label} es "{item.title}" por {price}.'


def requery_text(franchise: str) -> str:
    return f"mostrame opciones de {franchise.replace('_', ' ')} ordenadas por precio de menor a mayor"
