"""Deterministic best-match selection over catalog search results."""

import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from app.services.result import Result
from app.services.text_normalize import strip_diacritics

VOLUME_HINT_PATTERN = re.compile(r"(?:tomo|vol(?:umen)?|nro|n|no|numero|#)\s*0*(\d{1,3})\b")
TRAILING_DIMENSION_PATTERN = re.compile(r"\b\d{1,3}\s*x\s*\d{1,3}\b\s*$")
TRAILING_NUMBER_PATTERN = re.compile(r"\b0*(\d{1,3})\b\s*$")
TOKEN_SPLIT_PATTERN = re.compile(r"[^a-z0-9]+")

SERIES_STOPWORDS = frozenset({"de", "del", "la", "el", "los", "las", "the", "and", "y", "on", "of", "a", "an"})
MIN_SERIES_TOKEN_LENGTH = 3


@dataclass
class CatalogItem:
    id: str
    title: str
    stock: int = 0
    slug: str = ""
    product_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    currency: str = "ARS"
    amount: Optional[float] = None
    categories: List[str] = field(default_factory=list)


def parse_catalog_item(raw: Any) -> Result[CatalogItem]:
    """Validate one product from the catalog API."""
    if not isinstance(raw, dict):
        return Result.failure("catalog item is not an object", "invalid_item")

    item_id = raw.get("id")
    title = raw.get("title")
    if item_id is None or str(item_id).strip() == "":
        return Result.failure("catalog item without id", "invalid_item")
    if not isinstance(title, str) or not title.strip():
        return Result.failure("catalog item without title", "invalid_item")

    stock = raw.get("stock")
    if isinstance(stock, bool) or not isinstance(stock, (int, float)):
        stock = 0

    price = raw.get("price") if isinstance(raw.get("price"), dict) else {}
    amount = price.get("amount", raw.get("amount"))
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        amount = None

    categories = raw.get("categories") if isinstance(raw.get("categories"), list) else []

    return Result.success(
        CatalogItem(
            id=str(item_id).strip(),
            title=title.strip(),
            stock=int(stock),
            slug=str(raw.get("slug") or ""),
            product_url=_http_url_or_none(raw.get("productUrl") or raw.get("url")),
            thumbnail_url=_http_url_or_none(raw.get("thumbnailUrl") or raw.get("image")),
            currency=str(price.get("currency") or raw.get("currency") or "ARS"),
            amount=float(amount) if amount is not None else None,
            categories=[str(c) for c in categories if isinstance(c, str) and c.strip()],
        )
    )


def _http_url_or_none(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    if value.startswith("https://") or value.startswith("http://"):
        return value
    return None


def normalize_for_match(value: str) -> str:
    return strip_diacritics(value or "").lower()


def strip_volume_hints(value: str) -> str:
    return VOLUME_HINT_PATTERN.sub("", value)


def extract_volume_number(text: str, entities: Sequence[str]) -> Optional[int]:
    for source in [text, *entities]:
        if not isinstance(source, str):
            continue
        match = VOLUME_HINT_PATTERN.search(normalize_for_match(source))
        if match:
            value = int(match.group(1))
            if value > 0:
                return value
    return None


def extract_series_tokens(entities: Sequence[str], fallback_text: str) -> List[str]:
    candidates = [
        strip_volume_hints(normalize_for_match(entity)).strip()
        for entity in entities
        if isinstance(entity, str)
    ]
    candidates = [candidate for candidate in candidates if candidate]
    if not candidates:
        fallback = strip_volume_hints(normalize_for_match(fallback_text)).strip()
        candidates = [fallback] if fallback else []
    if not candidates:
        return []

    best = candidates[0]
    for candidate in candidates[1:]:
        if len(candidate) > len(best):
            best = candidate

    return [
        token
        for token in TOKEN_SPLIT_PATTERN.split(best)
        if len(token) >= MIN_SERIES_TOKEN_LENGTH and token not in SERIES_STOPWORDS
    ]


def build_volume_tokens(volume: int) -> List[str]:
    v = str(volume)
    return [f"#{v}", f"vol {v}", f"vol.{v}", f"volumen {v}", f"tomo {v}", f"nro {v}", f"numero {v}", f"no {v}"]


def extract_volume_from_title(title: str) -> Optional[int]:
    normalized = normalize_for_match(title)

    keyword_match = VOLUME_HINT_PATTERN.search(normalized)
    if keyword_match and int(keyword_match.group(1)) > 0:
        return int(keyword_match.group(1))

    # "30 x 40" is a size, not a volume
    if TRAILING_DIMENSION_PATTERN.search(normalized):
        return None

    trailing_match = TRAILING_NUMBER_PATTERN.search(normalized)
    if trailing_match and int(trailing_match.group(1)) > 0:
        return int(trailing_match.group(1))
    return None


def pick_preferred_by_stock(items: Sequence[CatalogItem]) -> CatalogItem:
    best = None
    for item in items:
        if item.stock > 0 and (best is None or item.stock > best.stock):
            best = item
    return best if best is not None else items[0]


def select_best_product_match(
    items: Sequence[CatalogItem],
    entities: Sequence[str],
    text: str,
) -> Optional[CatalogItem]:
    """Pick the catalog item that best matches the requested series and volume.

    Returns None when the request names no recognizable series, or when no
    title carries every series token.
    """
    if not items:
        return None

    series_tokens = extract_series_tokens(entities, text)
    if not series_tokens:
        return None

    series_matches = [
        item for item in items if all(token in normalize_for_match(item.title) for token in series_tokens)
    ]
    if not series_matches:
        return None

    requested_volume = extract_volume_number(text, entities)
    if requested_volume is not None:
        volume_tokens = build_volume_tokens(requested_volume)
        volume_matches = [
            item
            for item in series_matches
            if extract_volume_from_title(item.title) == requested_volume
            or any(token in normalize_for_match(item.title) for token in volume_tokens)
        ]
        if volume_matches:
            return pick_preferred_by_stock(volume_matches)

    return pick_preferred_by_stock(series_matches)
