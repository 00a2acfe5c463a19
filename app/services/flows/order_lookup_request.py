"""Extraction of order id and identity factors from a guest's free text."""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

REQUIRED_IDENTITY_FACTORS = 2
IDENTITY_FACTORS = ("dni", "name", "last_name", "phone")

ORDER_ID_BY_KEY_PATTERN = re.compile(r"\b(?:order[_\s-]?id|pedido|orden|order)\s*[:=#-]?\s*(\d{1,12})\b", re.I)
ORDER_ID_BY_HASH_PATTERN = re.compile(r"#\s*(\d{1,12})\b")
BARE_ORDER_ID_PATTERN = re.compile(r"^\d{1,12}$")
DNI_PATTERN = re.compile(r"\b(?:dni|documento)\s*[:=#-]?\s*([0-9.\-\s]{1,20})\b", re.I)
PHONE_PATTERN = re.compile(r"\b(?:telefono|tel[eé]fono|celular|whatsapp|phone)\s*[:=#-]?\s*([+0-9()\-.\s]{1,30})\b", re.I)
NAME_PATTERN = re.compile(r"\b(?:nombre|(?<!last\s)(?<!last-)name)\s*[:=#-]?\s*([^,;\n]+)", re.I)
LAST_NAME_PATTERN = re.compile(r"\b(?:apellido|last[_\s-]?name)\s*[:=#-]?\s*([^,;\n]+)", re.I)
NAME_VALUE_PATTERN = re.compile(r"^[a-zA-ZáéíóúÁÉÍÓÚñÑ'\-\s]{1,50}$")
PHONE_VALUE_PATTERN = re.compile(r"^\+?\d{8,20}$")
DNI_VALUE_PATTERN = re.compile(r"^\d{7,8}$")
LABEL_PATTERN = re.compile(
    r"\b(?:order[_\s-]?id|pedido|orden|order|dni|documento|telefono|tel[eé]fono|celular|whatsapp|phone"
    r"|nombre|name|apellido|last[_\s-]?name)\b",
    re.I,
)
LABELED_VALUE_PATTERNS = (
    re.compile(r"\b(?:order[_\s-]?id|pedido|orden|order)\s*[:=#-]?\s*#?\s*\d{1,12}\b", re.I),
    re.compile(r"\b(?:dni|documento)\s*[:=#-]?\s*[0-9.\-\s]{1,20}\b", re.I),
    re.compile(r"\b(?:telefono|tel[eé]fono|celular|whatsapp|phone)\s*[:=#-]?\s*[+0-9()\-.\s]{1,30}\b", re.I),
    re.compile(r"\b(?:apellido|last[_\s-]?name|nombre|name)\s*[:=#-]?\s*", re.I),
)
SEGMENT_SPLIT_PATTERN = re.compile(r"[,;\n]+")
PHONE_SEPARATORS = re.compile(r"[().\-\s]")

NAME_STOP_WORDS = frozenset(
    {
        "quiero", "saber", "estado", "pedido", "orden", "donde", "esta", "tenes", "tienes",
        "gracias", "ayuda", "consultar", "consulta", "favor", "dale", "nro", "numero", "tomo",
        "manga", "comic", "producto", "necesito", "mi",
    }
)


@dataclass
class OrderLookupRequest:
    order_id: Optional[int] = None
    identity: Dict[str, str] = field(default_factory=dict)
    invalid_factors: List[str] = field(default_factory=list)

    @property
    def provided_factors(self) -> int:
        return len(self.identity)

    @property
    def missing_factors(self) -> int:
        return max(REQUIRED_IDENTITY_FACTORS - self.provided_factors, 0)

    @property
    def is_complete(self) -> bool:
        return self.order_id is not None and self.provided_factors >= REQUIRED_IDENTITY_FACTORS

    @property
    def has_signals(self) -> bool:
        return self.order_id is not None or self.provided_factors > 0 or bool(self.invalid_factors)

    @property
    def has_strong_signals(self) -> bool:
        return self.order_id is not None and (self.provided_factors > 0 or bool(self.invalid_factors))


def _to_positive_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    value = value.strip()
    if not value.isdigit() or len(value) > 12:
        return None
    parsed = int(value)
    return parsed if parsed > 0 else None


def _order_id_from(text: str) -> Optional[int]:
    for pattern in (ORDER_ID_BY_KEY_PATTERN, ORDER_ID_BY_HASH_PATTERN):
        match = pattern.search(text)
        parsed = _to_positive_int(match.group(1)) if match else None
        if parsed:
            return parsed
    return None


def resolve_order_id(text: str, entities: Sequence[str]) -> Optional[int]:
    parsed = _order_id_from(text)
    if parsed:
        return parsed
    if BARE_ORDER_ID_PATTERN.match(text.strip()):
        return _to_positive_int(text.strip())
    for entity in entities:
        if isinstance(entity, str):
            parsed = _order_id_from(entity)
            if parsed:
                return parsed
    return None


def _extract(text: str, pattern: re.Pattern) -> Optional[str]:
    match = pattern.search(text)
    if not match:
        return None
    value = match.group(1).strip()
    return value or None


def normalize_phone_candidate(value: str) -> str:
    return PHONE_SEPARATORS.sub("", value).strip()


def _validate_dni(value: Optional[str]) -> Tuple[Optional[str], bool]:
    if not value:
        return None, False
    digits = re.sub(r"\D+", "", value)
    if DNI_VALUE_PATTERN.match(digits):
        return digits, False
    return None, True


def _validate_name(value: Optional[str]) -> Tuple[Optional[str], bool]:
    if not value:
        return None, False
    normalized = re.sub(r"\s+", " ", value).strip()
    if NAME_VALUE_PATTERN.match(normalized):
        return normalized, False
    return None, True


def _validate_phone(value: Optional[str]) -> Tuple[Optional[str], bool]:
    if not value:
        return None, False
    normalized = normalize_phone_candidate(value)
    if PHONE_VALUE_PATTERN.match(normalized):
        return normalized, False
    return None, True


def _split_segments(text: str) -> List[str]:
    segments = [segment.strip() for segment in SEGMENT_SPLIT_PATTERN.split(text) if segment.strip()]
    if len(segments) > 1:
        return segments
    return [text.strip()] if text.strip() else []


def _name_parts(segment: str) -> Tuple[Optional[str], Optional[str]]:
    normalized = re.sub(r"\s+", " ", segment).strip()
    if not NAME_VALUE_PATTERN.match(normalized):
        return None, None
    words = normalized.split(" ")
    if len(words) != 2:
        return None, None
    first, last = words
    if first.lower() in NAME_STOP_WORDS or last.lower() in NAME_STOP_WORDS:
        return None, None
    return first, last


def _name_parts_from_labeled(segment: str) -> Tuple[Optional[str], Optional[str]]:
    stripped = segment
    for pattern in LABELED_VALUE_PATTERNS:
        stripped = pattern.sub(" ", stripped)
    return _name_parts(stripped)


def _infer_unlabeled_identity(text: str, order_id: Optional[int], identity: Dict[str, str]) -> None:
    order_id_value = str(order_id) if order_id else None

    for segment in _split_segments(text):
        if LABEL_PATTERN.search(segment):
            if "name" not in identity or "last_name" not in identity:
                first, last = _name_parts_from_labeled(segment)
                if first:
                    identity.setdefault("name", first)
                if last:
                    identity.setdefault("last_name", last)
            continue

        digits = re.sub(r"\D+", "", segment)
        if digits:
            if order_id_value and digits == order_id_value:
                continue
            if "dni" not in identity and DNI_VALUE_PATTERN.match(digits):
                identity["dni"] = digits
                continue
            if "phone" not in identity:
                candidate = normalize_phone_candidate(segment)
                if PHONE_VALUE_PATTERN.match(candidate):
                    identity["phone"] = candidate
                    continue

        if "name" not in identity or "last_name" not in identity:
            first, last = _name_parts(segment)
            if first:
                identity.setdefault("name", first)
            if last:
                identity.setdefault("last_name", last)


def resolve_order_lookup_request(text: str, entities: Sequence[str] = ()) -> OrderLookupRequest:
    text = text or ""
    order_id = resolve_order_id(text, entities)

    labeled = {
        "dni": _validate_dni(_extract(text, DNI_PATTERN)),
        "name": _validate_name(_extract(text, NAME_PATTERN)),
        "last_name": _validate_name(_extract(text, LAST_NAME_PATTERN)),
        "phone": _validate_phone(_extract(text, PHONE_PATTERN)),
    }

    identity = {factor: value for factor, (value, _) in labeled.items() if value}
    _infer_unlabeled_identity(text, order_id, identity)

    return OrderLookupRequest(
        order_id=order_id,
        identity={factor: identity[factor] for factor in IDENTITY_FACTORS if identity.get(factor)},
        invalid_factors=[factor for factor in IDENTITY_FACTORS if labeled[factor][1]],
    )
