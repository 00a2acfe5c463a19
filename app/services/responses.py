"""User-facing Spanish copy for the deterministic flows."""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from app.config import settings

GENERIC_ERROR_MESSAGE = (
    "Tuvimos un inconveniente momentaneo. Si queres, te ayudo con otra consulta "
    "o lo intentamos de nuevo en un momento."
)
DUPLICATE_EVENT_MESSAGE = "Este mensaje ya fue procesado."
CATALOG_UNAVAILABLE_MESSAGE = (
    "Ahora mismo no puedo consultar el catalogo. Intenta nuevamente en unos minutos "
    "o si queres te muestro categorias disponibles."
)
ORDERS_UNAVAILABLE_MESSAGE = (
    "Ahora mismo no puedo consultar tus pedidos. Intenta nuevamente en unos minutos "
    f"o escribinos a {settings.support_email}."
)


@dataclass
class FlowReply:
    """Reply produced by a deterministic flow, before persistence."""

    ok: bool
    message: str
    requires_auth: bool = False


def format_money(amount: Optional[float], currency: str = "ARS") -> str:
    if amount is None:
        return "No disponible"
    # 12345.5 -> 12.345,50
    formatted = f"{amount:,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    return f"{currency} {formatted}"


def _optional(value: Any, fallback: str) -> str:
    if not isinstance(value, str) or not value.strip():
        return fallback
    return value.strip()


# Guest order lookup

LOOKUP_INSTRUCTIONS = "\n".join(
    [
        "Para consultar tu pedido sin iniciar sesion, enviame todo en un solo mensaje:",
        "- Numero de pedido (order_id)",
        "- Al menos 2 datos entre: dni, nombre, apellido, telefono",
        "",
        "Ejemplo: pedido 12345, dni 12345678, nombre Juan, apellido Perez",
    ]
)

FACTOR_LABELS = {"dni": "dni", "name": "nombre", "last_name": "apellido", "phone": "telefono"}


def order_lookup_has_data_question() -> FlowReply:
    return FlowReply(
        ok=False,
        message=(
            "Puedo consultar tu pedido sin que inicies sesion. "
            "Tenes a mano el numero de pedido y tus datos (dni, nombre, apellido o telefono)? Responde SI o NO."
        ),
    )


def order_lookup_unknown_has_data_answer() -> FlowReply:
    return FlowReply(
        ok=False,
        message="No te entendi. Tenes el numero de pedido y al menos 2 datos tuyos? Responde SI o NO.",
    )


def order_lookup_provide_data() -> FlowReply:
    return FlowReply(ok=False, message=LOOKUP_INSTRUCTIONS)


def order_lookup_missing_order_id() -> FlowReply:
    return FlowReply(ok=False, message=f"{LOOKUP_INSTRUCTIONS}\n\nNo encontre el numero de pedido en tu mensaje.")


def order_lookup_missing_identity_factors(provided_factors: int) -> FlowReply:
    missing = max(0, 2 - provided_factors)
    return FlowReply(
        ok=False,
        message=(
            f"{LOOKUP_INSTRUCTIONS}\n\nRecibi {provided_factors} dato(s) de identidad. "
            f"Necesito {missing} dato(s) mas."
        ),
    )


def order_lookup_invalid_payload(invalid_factors: Sequence[str] = ()) -> FlowReply:
    if invalid_factors:
        labels = ", ".join(FACTOR_LABELS.get(factor, factor) for factor in invalid_factors)
        detail = f"Revisa el formato de: {labels}."
    else:
        detail = "No pude validar el formato enviado."
    return FlowReply(ok=False, message=f"{LOOKUP_INSTRUCTIONS}\n\n{detail}")


def order_lookup_verification_failed() -> FlowReply:
    return FlowReply(
        ok=False,
        message=(
            "No pudimos validar los datos del pedido. Verifica el numero de pedido y tus datos, "
            "e intenta nuevamente."
        ),
    )


def order_lookup_unauthorized() -> FlowReply:
    return FlowReply(ok=False, message="No pude validar la consulta en este momento. Intenta nuevamente en unos segundos.")


def order_lookup_throttled() -> FlowReply:
    return FlowReply(
        ok=False,
        message="Hay alta demanda para consultas de pedidos. Intenta nuevamente en unos segundos.",
    )


def order_lookup_success_message(order: Dict[str, Any]) -> str:
    total = order.get("total") if isinstance(order.get("total"), dict) else None
    return "\n".join(
        [
            f"[PEDIDO #{order.get('id')}]",
            "",
            f"- Estado: {_optional(order.get('state'), 'Sin estado')}",
            f"- Total: {format_money(total.get('amount'), total.get('currency', 'ARS')) if total else 'No disponible'}",
            f"- Envio: {_optional(order.get('ship_method'), 'No disponible')}",
            f"- Tracking: {_optional(order.get('tracking_code'), 'Pendiente')}",
            f"- Pago: {_optional(order.get('payment_method'), 'No disponible')}",
        ]
    )


def orders_requires_auth() -> FlowReply:
    return FlowReply(
        ok=False,
        requires_auth=True,
        message="\n".join(
            [
                "[NECESITAS INICIAR SESION]",
                "",
                "Para consultar el estado de tus pedidos, necesitas estar autenticado.",
                "",
                "Opciones:",
                "1. Inicia sesion en la tienda",
                "2. Luego vuelve al chat (tu sesion se sincronizara)",
                f"3. Tambien puedes consultar por email a {settings.support_email}",
                "",
                "No compartas credenciales en el chat.",
            ]
        ),
    )


# Cancelled order escalation

def cancelled_order_escalation_offer() -> str:
    return "Si queres, te paso los canales de soporte para revisar la cancelacion. Responde SI o NO."


def cancelled_order_escalation_action(order_id: Optional[str]) -> FlowReply:
    order_hint = f"pedido #{order_id}" if order_id else "pedido"
    return FlowReply(
        ok=False,
        message="\n".join(
            [
                f"No tengo el motivo exacto de cancelacion de tu {order_hint} desde este canal.",
                "Para resolverlo rapido, escribinos por uno de estos canales:",
                f"- WhatsApp: {settings.support_whatsapp}",
                f"- Email: {settings.support_email}",
                "",
                f"Inclui el numero de {order_hint}, nombre completo y un telefono de contacto.",
            ]
        ),
    )


def cancelled_order_escalation_declined() -> FlowReply:
    return FlowReply(
        ok=False,
        message="Perfecto. Si despues queres que te pase los canales de soporte para revisarlo, avisame y te ayudo.",
    )


def cancelled_order_escalation_unknown_answer() -> FlowReply:
    return FlowReply(
        ok=False,
        message=(
            "Si queres que te pase los canales para revisarlo, responde SI. "
            "Si preferis seguir con otra consulta, responde NO."
        ),
    )


# Recommendations disambiguation

def recommendations_franchise_disambiguation(
    franchise_label: str, options: Sequence[str], total_candidates: Optional[int] = None
) -> FlowReply:
    if total_candidates is not None and total_candidates >= 0:
        header = f"Encontre {total_candidates} producto(s) de {franchise_label}."
    else:
        header = f"Tengo opciones de {franchise_label}."
    lines = [header, "Para recomendarte mejor, decime que tipo te interesa:"]
    lines.extend(f"- {option}" for option in options)
    lines.extend(["", "Si ya sabes que tomo/numero buscas, decimelo en el mismo mensaje."])
    return FlowReply(ok=False, message="\n".join(lines))


def recommendations_volume_disambiguation(franchise_label: str, category_label: str) -> FlowReply:
    return FlowReply(
        ok=False,
        message="\n".join(
            [
                f"Perfecto, vamos con {category_label} de {franchise_label}.",
                "Para afinar la recomendacion, decime una opcion:",
                "- tomo/numero especifico (ej: tomo 3)",
                "- desde el inicio",
                "- ultimos lanzamientos",
            ]
        ),
    )
