from app.services.flows.order_lookup_request import resolve_order_id, resolve_order_lookup_request


class TestLabeledExtraction:
    def test_full_labeled_message(self):
        request = resolve_order_lookup_request("pedido 12345, dni 12345678, nombre Juan, apellido Perez")
        assert request.order_id == 12345
        assert request.identity == {"dni": "12345678", "name": "Juan", "last_name": "Perez"}
        assert request.is_complete is True
        assert request.missing_factors == 0

    def test_phone_is_normalized(self):
        request = resolve_order_lookup_request("telefono +54 11 5555-1234")
        assert request.identity == {"phone": "+541155551234"}
        assert request.order_id is None

    def test_english_last_name_label_is_not_a_first_name(self):
        request = resolve_order_lookup_request("pedido 78399, last name: Perez")
        assert request.identity == {"last_name": "Perez"}
        assert request.missing_factors == 1
        assert request.is_complete is False

    def test_hyphenated_last_name_label(self):
        request = resolve_order_lookup_request("pedido 78399, dni 12345678, last-name Perez")
        assert request.identity == {"dni": "12345678", "last_name": "Perez"}

    def test_english_labels_together(self):
        request = resolve_order_lookup_request("order 78399, name: Juan, last name: Perez")
        assert request.identity == {"name": "Juan", "last_name": "Perez"}
        assert request.is_complete is True

    def test_invalid_dni_is_reported(self):
        request = resolve_order_lookup_request("dni 12")
        assert request.identity == {}
        assert request.invalid_factors == ["dni"]
        assert request.has_signals is True
        assert request.is_complete is False


class TestUnlabeledExtraction:
    def test_segments_fill_identity(self):
        request = resolve_order_lookup_request("pedido 78399, 12345678, Juan Perez")
        assert request.order_id == 78399
        assert request.identity == {"dni": "12345678", "name": "Juan", "last_name": "Perez"}

    def test_bare_order_id(self):
        request = resolve_order_lookup_request("12345")
        assert request.order_id == 12345
        assert request.identity == {}
        assert request.has_signals is True
        assert request.has_strong_signals is False

    def test_chatter_has_no_signals(self):
        request = resolve_order_lookup_request("quiero saber de mi pedido")
        assert request.order_id is None
        assert request.has_signals is False


class TestResolveOrderId:
    def test_hash_form(self):
        assert resolve_order_id("mi compra #4455", []) == 4455

    def test_entities_are_searched(self):
        assert resolve_order_id("hola", ["pedido #555"]) == 555

    def test_zero_is_not_an_order(self):
        assert resolve_order_id("0", []) is None
