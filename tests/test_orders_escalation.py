from app.services.flows.history import HistoryRow
from app.services.flows.orders_escalation import (
    FLOW_STATE_KEY,
    OFFERED_ESCALATION_KEY,
    OrdersEscalationFlowState,
    build_orders_escalation_metadata,
    handle_pending_orders_escalation_flow,
    resolve_cancelled_order_escalation_answer,
    resolve_orders_escalation_flow_state_from_history,
    resolve_recent_cancelled_order_id,
    should_continue_orders_escalation_flow,
)

AWAITING = OrdersEscalationFlowState.AWAITING_CANCELLED_REASON_CONFIRMATION

CANCELLED_ROWS = [
    HistoryRow(sender="user", content="pedido 78399, dni 12345678, nombre Juan"),
    HistoryRow(
        sender="bot",
        content="[PEDIDO #78399]\n\n- Estado: Cancelado",
        metadata={FLOW_STATE_KEY: AWAITING.value},
    ),
]


class TestAnswer:
    def test_yes(self):
        assert resolve_cancelled_order_escalation_answer("si por favor") == "yes"
        assert resolve_cancelled_order_escalation_answer("dale") == "yes"

    def test_no(self):
        assert resolve_cancelled_order_escalation_answer("no gracias") == "no"

    def test_unknown(self):
        assert resolve_cancelled_order_escalation_answer("que hora es") == "unknown"


class TestHistory:
    def test_state_and_order_id(self):
        rows = [CANCELLED_ROWS[1]]
        assert resolve_orders_escalation_flow_state_from_history(rows) == AWAITING
        assert resolve_recent_cancelled_order_id(CANCELLED_ROWS) == "78399"

    def test_no_cancelled_message(self):
        rows = [HistoryRow(sender="bot", content="[PEDIDO #78399]\n\n- Estado: Enviado")]
        assert resolve_recent_cancelled_order_id(rows) is None


class TestContinuation:
    def test_plain_answer_continues(self):
        assert should_continue_orders_escalation_flow(AWAITING, "si", "recommendations") is True

    def test_review_request_on_orders_intent(self):
        assert should_continue_orders_escalation_flow(AWAITING, "quiero que lo revisen", "orders") is True

    def test_review_request_on_other_intent(self):
        assert should_continue_orders_escalation_flow(AWAITING, "quiero que lo revisen", "recommendations") is False

    def test_no_pending_state(self):
        assert should_continue_orders_escalation_flow(None, "si", "orders") is False


class TestHandle:
    def test_yes_gives_support_channels(self):
        outcome = handle_pending_orders_escalation_flow("si", CANCELLED_ROWS)
        assert outcome.next_state is None
        assert "pedido #78399" in outcome.reply.message
        assert "WhatsApp" in outcome.reply.message

    def test_no_closes_flow(self):
        outcome = handle_pending_orders_escalation_flow("no", CANCELLED_ROWS)
        assert outcome.next_state is None
        assert outcome.reply.message.startswith("Perfecto")

    def test_unknown_keeps_waiting(self):
        outcome = handle_pending_orders_escalation_flow("que hora es", CANCELLED_ROWS)
        assert outcome.next_state == AWAITING

    def test_metadata(self):
        assert build_orders_escalation_metadata(AWAITING, offered=True) == {
            FLOW_STATE_KEY: AWAITING.value,
            OFFERED_ESCALATION_KEY: True,
        }
        assert build_orders_escalation_metadata(None) == {FLOW_STATE_KEY: None}
