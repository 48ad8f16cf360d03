"""Structured recipe markup (JSON-LD, Open Graph) and visible text from HTML pages."""
import json
import logging
import re
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup

from services.models import DEFAULT_RECIPE_NAME, CanonicalRecipe, Ingredient
from services.recipe_parser import parse_ingredient_line
from services.text_normalizer import normalize_fractions

logger = logging.getLogger(__name__)

ISO_DURATION_RE = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+(?:\.\d+)?)H)?(?:(?P<minutes>\d+(?:\.\d+)?)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$",
    re.IGNORECASE,
)
_MINUTES_TEXT_RE = re.compile(r"(\d+)\s*(?:min|mins|minute|minutes)\b", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    text = _TAG_RE.sub(" ", str(value))
    return " ".join(text.split())


def parse_iso8601_duration(value: Any) -> Optional[int]:
    """``PT1H20M`` -> 80. Numbers pass through as minutes; free text like '25 mins' is accepted."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if value >= 0 else None
    text = str(value).strip()
    match = ISO_DURATION_RE.match(text)
    if match and any(match.groupdict().values()):
        days = float(match.group("days") or 0)
        hours = float(match.group("hours") or 0)
        minutes = float(match.group("minutes") or 0)
        seconds = float(match.group("seconds") or 0)
        return int(round(days * 1440 + hours * 60 + minutes + seconds / 60))
    match = _MINUTES_TEXT_RE.search(text)
    if match:
        return int(match.group(1))
    return None


def _parse_yield(value: Any) -> Optional[int]:
    if isinstance(value, list):
        for item in value:
            parsed = _parse_yield(item)
            if parsed:
                return parsed
        return None
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value) or None
    match = re.search(r"\d+", str(value))
    if not match:
        return None
    return int(match.group()) or None


def _coerce_keywords(value: Any) -> List[str]:
    if not value:
        return []
    items = value if isinstance(value, list) else [value]
    tags: List[str] = []
    for item in items:
        if isinstance(item, str):
            tags.extend(part.strip() for part in item.split(",") if part.strip())
    return tags


def _extract_image(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return _extract_image(value.get("url"))
    if isinstance(value, list):
        for item in value:
            found = _extract_image(item)
            if found:
                return found
    return None


def _instruction_steps(value: Any) -> List[str]:
    """Flatten strings, HowToStep and HowToSection nodes into step strings."""
    if isinstance(value, str):
        return [line for line in (_clean_text(part) for part in value.splitlines()) if line]
    if isinstance(value, dict):
        if "itemListElement" in value:
            return _instruction_steps(value.get("itemListElement"))
        text = _clean_text(value.get("text") or value.get("name") or value.get("description"))
        return [text] if text else []
    steps: List[str] = []
    if isinstance(value, list):
        for entry in value:
            steps.extend(_instruction_steps(entry))
    return steps


def _ingredient_from_text(raw: Any) -> Optional[Ingredient]:
    text = _clean_text(normalize_fractions(str(raw or "")))
    if not text:
        return None
    return parse_ingredient_line(text) or Ingredient(name=text)


def recipe_from_json_ld(node: Dict[str, Any]) -> CanonicalRecipe:
    ingredients = [
        ingredient
        for ingredient in (_ingredient_from_text(raw) for raw in node.get("recipeIngredient") or [])
        if ingredient is not None
    ]
    return CanonicalRecipe(
        name=_clean_text(node.get("name")) or DEFAULT_RECIPE_NAME,
        description=_clean_text(node.get("description")),
        ingredients=ingredients,
        steps=_instruction_steps(node.get("recipeInstructions")),
        prep_time=parse_iso8601_duration(node.get("prepTime")),
        cook_time=parse_iso8601_duration(node.get("cookTime")),
        servings=_parse_yield(node.get("recipeYield")),
        tags=_coerce_keywords(node.get("keywords")),
        image_url=_extract_image(node.get("image")),
    )


def _is_recipe_node(node: Any) -> bool:
    if not isinstance(node, dict):
        return False
    node_type = node.get("@type")
    types = node_type if isinstance(node_type, list) else [node_type]
    return any(str(t).lower() == "recipe" for t in types if t)


def _candidate_nodes(data: Any) -> List[Any]:
    if isinstance(data, list):
        nodes: List[Any] = []
        for item in data:
            nodes.extend(_candidate_nodes(item))
        return nodes
    if isinstance(data, dict):
        graph = data.get("@graph")
        if isinstance(graph, list):
            return [data] + _candidate_nodes(graph)
        return [data]
    return []


def extract_recipes_from_html(html: str) -> List[Dict[str, Any]]:
    """Every JSON-LD node typed ``Recipe``, including ``@graph`` members and list payloads."""
    soup = BeautifulSoup(html or "", "html.parser")
    recipes: List[Dict[str, Any]] = []
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw_json = script.string or script.get_text()
        if not raw_json or not raw_json.strip():
            continue
        try:
            data = json.loads(raw_json)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed JSON-LD block (%d chars)", len(raw_json))
            continue
        recipes.extend(node for node in _candidate_nodes(data) if _is_recipe_node(node))
    return recipes


def extract_open_graph(html: str) -> Dict[str, str]:
    soup = BeautifulSoup(html or "", "html.parser")
    found: Dict[str, str] = {}
    for key in ("title", "description", "image"):
        tag = soup.find("meta", attrs={"property": f"og:{key}"}) or soup.find(
            "meta", attrs={"name": f"og:{key}"}
        )
        content = _clean_text(tag.get("content")) if tag else ""
        if content:
            found[key] = content
    if "title" not in found and soup.title and soup.title.string:
        found["title"] = _clean_text(soup.title.string)
    return found


def extract_page_text(html: str, max_chars: int = 20000) -> str:
    """Visible text of the main content, one block per line."""
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup(["script", "style", "noscript", "header", "footer", "nav", "aside", "form"]):
        tag.decompose()
    main = (
        soup.find(attrs={"itemtype": re.compile("Recipe", re.I)})
        or soup.find("article")
        or soup.find("main")
        or soup.body
        or soup
    )
    lines = [" ".join(line.split()) for line in main.get_text("\n", strip=True).splitlines()]
    return "\n".join(line for line in lines if line)[:max_chars]
