import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Tuple

from app.logging_config import get_logger
from app.services.recommendation_signals import detect_franchises, franchise_query
from app.services.text_normalize import normalize_for_search

logger = get_logger("intent_service")


class Intent(str, Enum):
    ORDERS = "orders"  # Estado de pedido, seguimiento, cancelaciones
    PAYMENT_SHIPPING = "payment_shipping"  # Medios de pago, envios, costos
    STORE_INFO = "store_info"  # Horarios, sucursales, contacto
    TICKETS = "tickets"  # Reclamos, productos fallados, devoluciones
    RECOMMENDATIONS = "recommendations"  # "Que me recomendas de ..."
    PRODUCTS = "products"  # Busqueda de un producto puntual, stock, precio
    GENERAL = "general"  # Todo lo demas


@dataclass
class IntentResult:
    intent: str
    entities: List[str] = field(default_factory=list)
    sentiment: str = "neutral"  # positive, neutral, negative
    confidence: float = 0.4


# Checked in order; earlier intents win ties.
INTENT_PATTERNS: Tuple[Tuple[Intent, Tuple[re.Pattern, ...]], ...] = (
    (
        Intent.TICKETS,
        (
            re.compile(r"\b(reclamo|queja|fallad[oa]|roto|rota|dañad[oa]|danad[oa]|devolucion|devolver|reembolso)\b"),
            re.compile(r"\b(no (me )?(llego|funciona|anda)|vino mal|problema con)\b"),
        ),
    ),
    (
        Intent.ORDERS,
        (
            re.compile(r"\b(pedido|pedidos|orden|ordenes|compra|compras|seguimiento|tracking)\b"),
            re.compile(r"\b(donde esta|estado de|mis pedidos|cancelad[oa])\b"),
        ),
    ),
    (
        Intent.PAYMENT_SHIPPING,
        (
            re.compile(r"\b(pago|pagos|pagar|tarjeta|cuotas|transferencia|mercado ?pago|efectivo)\b"),
            re.compile(r"\b(envio|envios|enviar|correo|andreani|retiro|retirar|costo de envio)\b"),
        ),
    ),
    (
        Intent.STORE_INFO,
        (
            re.compile(r"\b(horario|horarios|sucursal|sucursales|local|locales|direccion|abren|cierran|telefono de la tienda)\b"),
        ),
    ),
    (
        Intent.RECOMMENDATIONS,
        (
            re.compile(r"\b(recomend\w*|suger\w*|que me (das|ofreces)|algo de|regalo|novedades|lanzamientos)\b"),
        ),
    ),
    (
        Intent.PRODUCTS,
        (
            re.compile(r"\b(tenes|tienen|hay|stock|precio|cuanto (sale|cuesta|esta)|busco|quiero comprar)\b"),
            re.compile(r"\b(manga|mangas|comic|comics|tomo|tomos|funko|figura|figuras|libro|libros)\b"),
        ),
    ),
)

NEGATIVE_PATTERN = re.compile(
    r"\b(enojad[oa]|indignad[oa]|pesimo|horrible|vergüenza|verguenza|estafa|nunca mas|cansad[oa]|harto|harta)\b"
)
POSITIVE_PATTERN = re.compile(r"\b(gracias|genial|excelente|buenisimo|buenisima|joya|espectacular)\b")

ORDER_REFERENCE_PATTERN = re.compile(r"(?:#\s*|\bpedido\s*#?\s*)(\d{3,12})\b")
VOLUME_REFERENCE_PATTERN = re.compile(r"\b(?:tomo|vol|volumen)\s*\d{1,3}\b")
QUOTED_PATTERN = re.compile(r"[\"“]([^\"”]{2,80})[\"”]")


def extract_entities(text: str) -> List[str]:
    """Order references, quoted titles, franchises and volume mentions, in that order."""
    entities: List[str] = []
    raw = text or ""
    normalized = normalize_for_search(raw)

    for match in ORDER_REFERENCE_PATTERN.finditer(raw.lower()):
        entities.append(match.group(1))
    for match in QUOTED_PATTERN.finditer(raw):
        entities.append(match.group(1).strip())
    for key in detect_franchises(raw):
        entities.append(franchise_query(key))
    for match in VOLUME_REFERENCE_PATTERN.finditer(normalized):
        entities.append(match.group(0))

    return list(dict.fromkeys(entity for entity in entities if entity))


def detect_sentiment(normalized_text: str) -> str:
    if NEGATIVE_PATTERN.search(normalized_text):
        return "negative"
    if POSITIVE_PATTERN.search(normalized_text):
        return "positive"
    return "neutral"


def classify_intent(text: str) -> IntentResult:
    """Classify a user message with keyword rules.

    Confidence grows with the number of pattern groups that matched for the
    winning intent. Messages that mention a franchise but no other signal are
    treated as product searches.
    """
    normalized = normalize_for_search(text)
    entities = extract_entities(text)
    sentiment = detect_sentiment(normalized)

    if not normalized:
        return IntentResult(intent=Intent.GENERAL.value, entities=entities, sentiment=sentiment, confidence=0.0)

    best_intent, best_hits = Intent.GENERAL, 0
    for intent, patterns in INTENT_PATTERNS:
        hits = sum(1 for pattern in patterns if pattern.search(normalized))
        if hits > best_hits:
            best_intent, best_hits = intent, hits

    if best_intent == Intent.GENERAL and any(not entity.isdigit() for entity in entities):
        best_intent, best_hits = Intent.PRODUCTS, 1

    if best_hits == 0:
        confidence = 0.4
    elif best_hits == 1:
        confidence = 0.7
    else:
        confidence = 0.9

    logger.debug(f"Intent classified: {best_intent.value} (hits={best_hits}, entities={len(entities)})")
    return IntentResult(
        intent=best_intent.value,
        entities=entities,
        sentiment=sentiment,
        confidence=confidence,
    )
