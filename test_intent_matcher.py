from intent.matcher import IntentMatcher, normalize_text
from shared.models import TriggerPhrase


def _triggers() -> list[TriggerPhrase]:
    return [
        TriggerPhrase(phrase="cancel my appointment", intent="cancel_appointment", domain_id="dental"),
        TriggerPhrase(phrase="book", intent="book_appointment", domain_id="dental"),
        TriggerPhrase(phrase="Marcar consulta", intent="Book Appointment", domain_id="dental"),
    ]


def test_trigger_phrase_resolves_intent_with_full_confidence() -> None:
    matched = IntentMatcher().match("I'd like to book an appointment", _triggers())

    assert matched is not None
    assert matched.intent == "book_appointment"
    assert matched.confidence == 1.0
    assert matched.source == "trigger"
    assert matched.entities == {}
    assert matched.original_query == "I'd like to book an appointment"


def test_match_is_case_and_accent_insensitive() -> None:
    matched = IntentMatcher().match("Quero MARCÁR   consulta amanhã", _triggers())

    assert matched is not None
    assert matched.intent == "book_appointment"


def test_first_trigger_in_configuration_order_wins() -> None:
    # "book" also appears in the utterance, but the cancel phrase is configured first.
    matched = IntentMatcher().match("Please cancel my appointment, I'll book later", _triggers())

    assert matched is not None
    assert matched.intent == "cancel_appointment"


def test_no_trigger_returns_none() -> None:
    assert IntentMatcher().match("What are your opening hours?", _triggers()) is None
    assert IntentMatcher().match("   ", _triggers()) is None


def test_normalize_text_strips_accents_and_whitespace() -> None:
    assert normalize_text("  Ação   Rápida ") == "acao rapida"
    assert normalize_text("") == ""
