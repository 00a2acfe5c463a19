from app.services.intent_service import Intent, classify_intent, detect_sentiment, extract_entities


class TestClassifyIntent:
    def test_order_status(self):
        result = classify_intent("donde esta mi pedido #12345")
        assert result.intent == Intent.ORDERS.value
        assert result.confidence == 0.9
        assert "12345" in result.entities

    def test_tickets_win_ties(self):
        assert classify_intent("me llego roto el funko").intent == Intent.TICKETS.value

    def test_product_search(self):
        result = classify_intent("tenes mangas de naruto?")
        assert result.intent == Intent.PRODUCTS.value
        assert result.confidence == 0.9
        assert result.entities == ["naruto"]

    def test_recommendations(self):
        result = classify_intent("recomendame algo de one piece")
        assert result.intent == Intent.RECOMMENDATIONS.value
        assert "one piece" in result.entities

    def test_bare_franchise_is_product_search(self):
        result = classify_intent("naruto")
        assert result.intent == Intent.PRODUCTS.value
        assert result.confidence == 0.7

    def test_general(self):
        result = classify_intent("hola")
        assert result.intent == Intent.GENERAL.value
        assert result.confidence == 0.4

    def test_empty(self):
        result = classify_intent("")
        assert result.intent == Intent.GENERAL.value
        assert result.confidence == 0.0


class TestEntitiesAndSentiment:
    def test_quoted_title_and_volume(self):
        entities = extract_entities('busco "Berserk Deluxe" tomo 3')
        assert "Berserk Deluxe" in entities
        assert "tomo 3" in entities

    def test_sentiment(self):
        assert detect_sentiment("estoy harto pesimo servicio") == "negative"
        assert detect_sentiment("genial gracias") == "positive"
        assert detect_sentiment("hola") == "neutral"
