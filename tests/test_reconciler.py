import json

import pytest

from services.errors import ExternalServiceError, ReconciliationParseError
from services.models import CanonicalRecipe, Ingredient, ParsePolicy
from services.reconciler import (
    FALLBACK_CONFIDENCE,
    PARSE_FAILURE_NOTE,
    AIReconciler,
    bind_to_preliminary,
    extract_json,
    should_reconcile,
)


class FakeClient:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    def complete(self, messages, *, temperature=None, images=None):
        self.calls.append({"messages": messages, "temperature": temperature})
        if self.error:
            raise self.error
        return self.reply


def _preliminary():
    return CanonicalRecipe(
        name="Pancakes",
        ingredients=[Ingredient(name="flour", quantity="1 2", unit="cup"), Ingredient(name="milk")],
        steps=[],
    )


def test_extract_json_direct():
    assert extract_json('{"a": 1}') == {"a": 1}


def test_extract_json_fenced_block():
    assert extract_json('Sure!\n```json\n{"a": 2}\n```\nEnjoy') == {"a": 2}


def test_extract_json_brace_span():
    assert extract_json('Here it is: {"a": {"b": 3}} -- done') == {"a": {"b": 3}}


def test_extract_json_raises_when_nothing_parses():
    with pytest.raises(ReconciliationParseError):
        extract_json("no json here")


def test_should_reconcile_only_malformed_non_verbatim():
    malformed = _preliminary()
    assert should_reconcile(malformed, ParsePolicy.CONSERVATIVE)
    assert not should_reconcile(malformed, ParsePolicy.VERBATIM)

    well_formed = CanonicalRecipe(ingredients=[Ingredient(name="flour")], steps=["Mix"])
    assert not should_reconcile(well_formed, ParsePolicy.CONSERVATIVE)


def test_binding_corrects_quantities_and_drops_invented_ingredients():
    candidate = CanonicalRecipe(
        ingredients=[
            Ingredient(name="all-purpose flour", quantity="1/2", unit="cups"),
            Ingredient(name="saffron", quantity="1", unit="pinch"),
        ],
    )
    outcome = bind_to_preliminary(_preliminary(), candidate, "1 2 cup flour, milk", ParsePolicy.CONSERVATIVE)

    names = [ing.name for ing in outcome.recipe.ingredients]
    assert names == ["flour", "milk"]
    assert outcome.recipe.ingredients[0].quantity == "1/2"
    assert any("saffron" in note for note in outcome.notes)
    assert any("Kept 'milk'" in note for note in outcome.notes)


def test_steps_only_added_under_enrich_when_supported():
    candidate = CanonicalRecipe(steps=["Whisk flour and milk", "Flambe with brandy"])
    evidence = "flour milk whisk"

    conservative = bind_to_preliminary(_preliminary(), candidate, evidence, ParsePolicy.CONSERVATIVE)
    assert conservative.recipe.steps == []

    enriched = bind_to_preliminary(_preliminary(), candidate, evidence, ParsePolicy.ENRICH)
    assert enriched.recipe.steps == ["Whisk flour and milk"]
    assert any("unsupported step" in note for note in enriched.notes)


def test_reconcile_uses_model_confidence_at_temperature_zero():
    reply = json.dumps(
        {
            "recipe": {"name": "Pancakes", "ingredients": [{"name": "flour", "quantity": "1/2", "unit": "cup"}]},
            "notes": ["fixed fraction"],
            "confidence": 0.85,
        }
    )
    client = FakeClient(reply=reply)
    outcome = AIReconciler(client).reconcile(_preliminary(), "1 2 cup flour", ParsePolicy.CONSERVATIVE)

    assert client.calls[0]["temperature"] == 0.0
    assert "STRICT JSON" in client.calls[0]["messages"][0]["content"]
    assert outcome.confidence == 0.85
    assert "fixed fraction" in outcome.notes
    assert outcome.recipe.ingredients[0].quantity == "1/2"


def test_reconcile_unparseable_reply_returns_preliminary():
    preliminary = _preliminary()
    outcome = AIReconciler(FakeClient(reply="I cannot help with that")).reconcile(
        preliminary, "evidence", ParsePolicy.CONSERVATIVE
    )
    assert outcome.recipe is preliminary
    assert outcome.notes == [PARSE_FAILURE_NOTE]
    assert outcome.confidence == FALLBACK_CONFIDENCE
    assert not outcome.applied


def test_reconcile_service_error_never_raises():
    preliminary = _preliminary()
    client = FakeClient(error=ExternalServiceError("ollama", "connection refused"))
    outcome = AIReconciler(client).reconcile(preliminary, "evidence", ParsePolicy.CONSERVATIVE)

    assert outcome.recipe is preliminary
    assert outcome.confidence == FALLBACK_CONFIDENCE
    assert "connection refused" in outcome.notes[0]


@pytest.mark.parametrize(
    "reply",
    ['{"ingredients": 5}', '{"steps": 3}', '{"tags": true}', '{"prep_time": 1e999}'],
)
def test_reconcile_tolerates_misshapen_model_json(reply):
    preliminary = _preliminary()
    outcome = AIReconciler(FakeClient(reply=reply)).reconcile(preliminary, "evidence", ParsePolicy.CONSERVATIVE)

    assert [ing.name for ing in outcome.recipe.ingredients] == ["flour", "milk"]
    assert outcome.recipe.steps == []
    assert outcome.recipe.prep_time is None


def test_reconcile_falls_back_when_binding_fails(monkeypatch):
    def broken(data):
        raise TypeError("unexpected shape")

    monkeypatch.setattr("services.reconciler.recipe_from_dict", broken)
    preliminary = _preliminary()
    outcome = AIReconciler(FakeClient(reply='{"name": "x"}')).reconcile(
        preliminary, "evidence", ParsePolicy.CONSERVATIVE
    )

    assert outcome.recipe is preliminary
    assert outcome.notes == [PARSE_FAILURE_NOTE]
    assert outcome.confidence == FALLBACK_CONFIDENCE
    assert not outcome.applied
