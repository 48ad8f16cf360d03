import pytest

from services.errors import ValidationError
from services.models import (
    DEFAULT_RECIPE_NAME,
    CanonicalRecipe,
    FileInput,
    ImportProvenance,
    Ingredient,
    ParsePolicy,
    TextInput,
    UrlInput,
    clamp_unit,
    coerce_input,
    recipe_from_dict,
)


def test_coerce_input_variants():
    assert coerce_input({"url": " https://e.x/pie "}) == UrlInput("https://e.x/pie")
    assert coerce_input({"text": ""}) == TextInput("")
    assert coerce_input({"file": "/tmp/a.png"}) == FileInput(uri="/tmp/a.png")
    assert coerce_input({"file": {"uri": "/tmp/a.mp4", "mime": "video/mp4", "size": "10"}}) == FileInput(
        uri="/tmp/a.mp4", mime="video/mp4", size=10
    )
    typed = TextInput("x")
    assert coerce_input(typed) is typed


@pytest.mark.parametrize("payload", [{}, {"url": "a", "text": "b"}, {"file": {"mime": "image/png"}}, 42])
def test_coerce_input_rejects_bad_payloads(payload):
    with pytest.raises(ValidationError):
        coerce_input(payload)


def test_recipe_from_dict_accepts_loose_shapes():
    recipe = recipe_from_dict(
        {
            "title": "Iced Tea",
            "ingredients": ["ice", {"name": "tea", "quantity": 0.5, "unit": "Cups"}, {"quantity": 1}],
            "instructions": ["Steep", "  ", "Pour"],
            "cookTime": "5",
            "servings": 0,
            "imageUrl": "https://e.x/tea.jpg",
        }
    )
    assert recipe.name == "Iced Tea"
    assert recipe.ingredients == [Ingredient(name="ice"), Ingredient(name="tea", quantity="0.5", unit="cup")]
    assert recipe.steps == ["Steep", "Pour"]
    assert recipe.cook_time == 5
    assert recipe.servings is None
    assert recipe.image_url == "https://e.x/tea.jpg"
    assert recipe_from_dict({}).name == DEFAULT_RECIPE_NAME


def test_well_formed_requires_named_ingredients_and_steps():
    assert not CanonicalRecipe(ingredients=[Ingredient(name="tea")]).is_well_formed()
    assert CanonicalRecipe(ingredients=[Ingredient(name="tea")], steps=["Steep"]).is_well_formed()
    assert not CanonicalRecipe(ingredients=[Ingredient(name=" ")], steps=["Steep"]).is_well_formed()


def test_confidence_is_clamped():
    assert clamp_unit("0.4") == 0.4
    assert clamp_unit(float("nan"), default=0.7) == 0.7
    provenance = ImportProvenance(source="text", extraction_method="text", policy=ParsePolicy.ENRICH, confidence=3)
    assert provenance.confidence == 1.0
    assert provenance.to_dict()["policy"] == "enrich"


def test_recipe_from_dict_ignores_scalars_and_overflow():
    recipe = recipe_from_dict(
        {"ingredients": 5, "steps": 3, "tags": True, "prep_time": float("inf"), "servings": 1e999}
    )
    assert recipe.is_empty()
    assert recipe.tags == []
    assert recipe.prep_time is None
    assert recipe.servings is None
    assert recipe_from_dict({"ingredients": [{"name": "salt", "quantity": float("nan")}]}).ingredients == [
        Ingredient(name="salt")
    ]
