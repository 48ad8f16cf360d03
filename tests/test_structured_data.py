import json

from services.models import Ingredient
from services.structured_data import (
    extract_open_graph,
    extract_page_text,
    extract_recipes_from_html,
    parse_iso8601_duration,
    recipe_from_json_ld,
)

RECIPE_NODE = {
    "@type": "Recipe",
    "name": "Weeknight Chili",
    "description": "<p>Fast and hearty.</p>",
    "recipeIngredient": ["1 ½ cups kidney beans", "2 large eggs", "Salt to taste"],
    "recipeInstructions": [
        {"@type": "HowToSection", "itemListElement": [{"@type": "HowToStep", "text": "Brown the beef."}]},
        {"@type": "HowToStep", "text": "Simmer 30 minutes."},
    ],
    "prepTime": "PT15M",
    "cookTime": "PT1H20M",
    "recipeYield": ["6", "6 servings"],
    "keywords": "chili, weeknight",
    "image": {"@type": "ImageObject", "url": "https://example.com/chili.jpg"},
}


def _page(payload, extra_head=""):
    return (
        "<html><head>"
        f'<script type="application/ld+json">{json.dumps(payload)}</script>'
        f"{extra_head}</head><body><article><h1>Chili</h1><p>Cook it.</p></article></body></html>"
    )


def test_iso_durations():
    assert parse_iso8601_duration("PT1H20M") == 80
    assert parse_iso8601_duration("PT45M") == 45
    assert parse_iso8601_duration("P1DT2H") == 1560
    assert parse_iso8601_duration("25 mins") == 25
    assert parse_iso8601_duration(12) == 12
    assert parse_iso8601_duration("soon") is None
    assert parse_iso8601_duration(None) is None


def test_recipe_from_json_ld_maps_fields():
    recipe = recipe_from_json_ld(RECIPE_NODE)

    assert recipe.name == "Weeknight Chili"
    assert recipe.description == "Fast and hearty."
    assert recipe.ingredients[0] == Ingredient(name="kidney beans", quantity="1 1/2", unit="cup")
    assert recipe.ingredients[1] == Ingredient(name="2 large eggs")
    assert recipe.ingredients[2] == Ingredient(name="Salt to taste")
    assert recipe.steps == ["Brown the beef.", "Simmer 30 minutes."]
    assert recipe.prep_time == 15
    assert recipe.cook_time == 80
    assert recipe.servings == 6
    assert recipe.tags == ["chili", "weeknight"]
    assert recipe.image_url == "https://example.com/chili.jpg"


def test_extract_recipes_handles_graph_and_lists():
    graph = {"@context": "https://schema.org", "@graph": [{"@type": "WebPage"}, RECIPE_NODE]}
    assert extract_recipes_from_html(_page(graph)) == [RECIPE_NODE]

    listed = [{"@type": "Organization"}, {**RECIPE_NODE, "@type": ["Recipe", "NewsArticle"]}]
    assert len(extract_recipes_from_html(_page(listed))) == 1


def test_malformed_json_ld_is_skipped():
    html = '<script type="application/ld+json">{not json</script>'
    assert extract_recipes_from_html(html) == []


def test_open_graph_with_title_fallback():
    html = _page(
        {},
        '<meta property="og:description" content="Best chili"><meta property="og:image" content="https://e.x/c.jpg">'
        "<title>Chili | Site</title>",
    )
    assert extract_open_graph(html) == {
        "description": "Best chili",
        "image": "https://e.x/c.jpg",
        "title": "Chili | Site",
    }


def test_page_text_prefers_article_and_drops_scripts():
    html = (
        "<html><body><nav>Home</nav><script>var x = 1;</script>"
        "<article><h1>Chili</h1><ul><li>2 cups beans</li></ul></article>"
        "<footer>Copyright</footer></body></html>"
    )
    assert extract_page_text(html) == "Chili\n2 cups beans"
