"""Deterministic rule-based recipe parser.

Walks the normalized evidence line by line with a monotonic section state
(title -> ingredients -> steps). When that structured pass finds nothing at
all, an unstructured pass searches sentence chunks for quantity+unit runs and
instruction-like sentences instead. The parser never raises.
"""
import re
from typing import List, Optional, Tuple

from services.models import DEFAULT_RECIPE_NAME, CanonicalRecipe, Ingredient
from services.units import UNIT_PATTERN, normalize_unit

QUANTITY_PATTERN = r"\d+\s+\d+/\d+|\d+/\d+|\d+(?:\.\d+)?"

INGREDIENT_HEADERS = r"ingredients|what you need|shopping list|you will need"
STEP_HEADERS = r"steps|instructions|directions|method|preparation|how to make"

COOKING_VERBS = (
    "add", "mix", "stir", "cook", "bake", "grill", "saute", "sauté", "boil",
    "simmer", "preheat", "heat", "combine", "whisk", "fold", "serve", "season",
    "chop", "slice", "reduce", "bring", "pour", "transfer", "garnish", "knead",
    "rest", "marinate", "drain", "rinse", "place", "spread", "toast", "fry",
    "roast", "blend", "beat", "melt", "cover", "remove", "let", "top", "cut",
)

_BULLET = r"[-•*–·▪●▢☐>]+"

INGREDIENT_LINE_RE = re.compile(
    rf"^(?P<qty>{QUANTITY_PATTERN})\s*(?P<unit>{UNIT_PATTERN})\b\.?\s+(?P<name>\S.*)$",
    re.IGNORECASE,
)
COUNT_LINE_RE = re.compile(rf"^(?P<qty>{QUANTITY_PATTERN})\s+(?P<name>[^\W\d_].*)$")
INGREDIENT_SEARCH_RE = re.compile(
    rf"(?<![\w/.])(?P<qty>{QUANTITY_PATTERN})\s*(?P<unit>{UNIT_PATTERN})\b\.?\s+(?:of\s+)?"
    r"(?P<name>[^\W\d_][\w'\- ]*?)(?=\s+(?:and|or|then|with|to|into|in|for)\b|[,.;:!?()]|$)",
    re.IGNORECASE,
)

SECTION_HEADER_RE = re.compile(
    rf"^[^\w]*(?P<header>{INGREDIENT_HEADERS}|{STEP_HEADERS})\b[ \t]*(?:\([^)]*\))?[ \t]*"
    r"(?::[ \t]*(?P<rest>.*?)|[^\w]*)$",
    re.IGNORECASE,
)
_INGREDIENT_HEADER_RE = re.compile(rf"^(?:{INGREDIENT_HEADERS})$", re.IGNORECASE)

META_LINE_RE = re.compile(
    r"^[^\w]*(?:prep(?:aration)?\s*time|cook(?:ing)?\s*time|total\s*time|serves|servings|yields?)\b",
    re.IGNORECASE,
)
_DURATION = (
    r"(?:(?P<hours>\d+(?:\.\d+)?)\s*(?:hours?|hrs?|h)\b\s*(?:and\s*)?)?"
    r"(?:(?P<minutes>\d+)\s*(?:minutes?|mins?|m)\b)?"
)
PREP_TIME_RE = re.compile(rf"prep(?:aration)?\s*time\s*[:\-]?\s*{_DURATION}", re.IGNORECASE)
COOK_TIME_RE = re.compile(rf"cook(?:ing)?\s*time\s*[:\-]?\s*{_DURATION}", re.IGNORECASE)
SERVINGS_RE = re.compile(
    r"(?:serves|servings|yields?)\s*[:\-]?\s*(?P<count>\d+)|(?P<count_after>\d+)\s*servings\b",
    re.IGNORECASE,
)

NUMBERED_RE = re.compile(r"^(?:\d+\s*[.)](?!\d)|step\s*\d+\s*[:.)\-]?)\s*", re.IGNORECASE)
BULLET_RE = re.compile(rf"^{_BULLET}\s*")
STEP_PREFIX_RE = re.compile(rf"^(?:{_BULLET}\s*)?(?:\d+\s*[.)](?!\d)|step\s*\d+\s*[:.)\-]?)?\s*", re.IGNORECASE)
VERB_START_RE = re.compile(
    r"^(?:" + "|".join(COOKING_VERBS) + r")\b", re.IGNORECASE
)
TIMED_ACTION_RE = re.compile(
    r"\bfor\s+\d+\s*(?:min|mins|minutes|hour|hours)\b|\buntil\b", re.IGNORECASE
)
# Words that open both instructions and ingredient names ("Top round steak").
AMBIGUOUS_LEAD_RE = re.compile(r"^(?:top|rest|cut|roast|toast)\b", re.IGNORECASE)
INSTRUCTION_TAIL_RE = re.compile(r"^\w+\s+(?:with|until|for|into|over|on|in|them|it|each)\b", re.IGNORECASE)
SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+|\n+")

OPTIONAL_RE = re.compile(r"\(optional\)", re.IGNORECASE)
LEADING_OF_RE = re.compile(r"^of\s+", re.IGNORECASE)

NAME_MAX_CHARS = 80


def parse_ingredient_line(line: str) -> Optional[Ingredient]:
    """Parse ``<quantity> <unit> <name>``; return None when the line does not fit."""
    text = BULLET_RE.sub("", (line or "").strip())
    match = INGREDIENT_LINE_RE.match(text)
    if not match:
        return None
    name = LEADING_OF_RE.sub("", match.group("name").strip()).strip()
    if not name:
        return None
    return Ingredient(
        name=name,
        quantity=" ".join(match.group("qty").split()),
        unit=normalize_unit(match.group("unit")),
        optional=bool(OPTIONAL_RE.search(name)),
    )


def _parse_count_line(line: str) -> Optional[Ingredient]:
    match = COUNT_LINE_RE.match(BULLET_RE.sub("", line.strip()))
    if not match:
        return None
    name = match.group("name").strip()
    return Ingredient(
        name=name,
        quantity=" ".join(match.group("qty").split()),
        optional=bool(OPTIONAL_RE.search(name)),
    )


def is_step_like(line: str) -> bool:
    text = (line or "").strip()
    if not text:
        return False
    if NUMBERED_RE.match(text):
        return True
    body = BULLET_RE.sub("", text)
    if VERB_START_RE.match(body):
        return True
    return bool(TIMED_ACTION_RE.search(body))


def _reads_as_step(line: str) -> bool:
    """Stricter than is_step_like: used where a wrong call cannot be undone."""
    if not is_step_like(line) or _parse_count_line(line):
        return False
    body = BULLET_RE.sub("", line.strip())
    if NUMBERED_RE.match(line.strip()) or TIMED_ACTION_RE.search(body):
        return True
    if AMBIGUOUS_LEAD_RE.match(body):
        return bool(INSTRUCTION_TAIL_RE.match(body))
    return True


def _is_meta_line(line: str) -> bool:
    return bool(META_LINE_RE.match(line))


def _split_header(line: str) -> Optional[Tuple[str, str]]:
    match = SECTION_HEADER_RE.match(line)
    if not match:
        return None
    header = " ".join(match.group("header").lower().split())
    section = "ingredients" if _INGREDIENT_HEADER_RE.match(header) else "steps"
    return section, (match.group("rest") or "").strip()


def _duration_minutes(match: "re.Match[str]") -> Optional[int]:
    hours, minutes = match.group("hours"), match.group("minutes")
    if hours is None and minutes is None:
        return None
    total = float(hours or 0) * 60 + int(minutes or 0)
    return int(round(total))


def _clean_step(line: str) -> str:
    return STEP_PREFIX_RE.sub("", line.strip(), count=1).strip()


class _Timing:
    def __init__(self) -> None:
        self.prep_time: Optional[int] = None
        self.cook_time: Optional[int] = None
        self.servings: Optional[int] = None

    def scan(self, line: str) -> None:
        if self.prep_time is None:
            match = PREP_TIME_RE.search(line)
            if match:
                self.prep_time = _duration_minutes(match)
        if self.cook_time is None:
            match = COOK_TIME_RE.search(line)
            if match:
                self.cook_time = _duration_minutes(match)
        if self.servings is None:
            match = SERVINGS_RE.search(line)
            if match:
                count = int(match.group("count") or match.group("count_after"))
                self.servings = count or None


def _parse_structured(lines: List[str], timing: _Timing) -> CanonicalRecipe:
    recipe = CanonicalRecipe(name="")
    state = "title"
    title_lines = 0

    def add_ingredient_line(text: str) -> None:
        nonlocal state
        ingredient = parse_ingredient_line(text)
        if ingredient is not None:
            recipe.ingredients.append(ingredient)
            return
        if _reads_as_step(text):
            state = "steps"
            add_step_line(text)
            return
        ingredient = _parse_count_line(text)
        if ingredient is None:
            name = BULLET_RE.sub("", text).strip()
            ingredient = Ingredient(name=name, optional=bool(OPTIONAL_RE.search(name))) if name else None
        if ingredient is not None:
            recipe.ingredients.append(ingredient)

    def add_step_line(text: str) -> None:
        step = _clean_step(text)
        if step:
            recipe.steps.append(step)

    for line in lines:
        timing.scan(line)
        if _is_meta_line(line):
            continue

        header = _split_header(line)
        if header is not None:
            section, rest = header
            if section == "ingredients" and state == "title":
                state = "ingredients"
            elif section == "steps" and state != "steps":
                state = "steps"
            if not rest:
                continue
            line = rest

        if state == "title":
            title_lines += 1
            if parse_ingredient_line(line) is not None:
                state = "ingredients"
            elif _reads_as_step(line) and recipe.name:
                state = "steps"
            elif not recipe.name:
                recipe.name = line
                continue
            else:
                if title_lines == 2 and not recipe.description:
                    recipe.description = line
                continue

        if state == "ingredients":
            add_ingredient_line(line)
        else:
            add_step_line(line)

    return recipe


def _parse_unstructured(text: str, recipe: CanonicalRecipe) -> None:
    chunks = [chunk.strip() for chunk in SENTENCE_SPLIT_RE.split(text) if chunk and chunk.strip()]
    for chunk in chunks:
        if _is_meta_line(chunk):
            continue
        for match in INGREDIENT_SEARCH_RE.finditer(chunk):
            name = match.group("name").strip(" -'")
            if not name:
                continue
            recipe.ingredients.append(
                Ingredient(
                    name=name,
                    quantity=" ".join(match.group("qty").split()),
                    unit=normalize_unit(match.group("unit")),
                )
            )
        if is_step_like(chunk):
            step = _clean_step(chunk)
            if step:
                recipe.steps.append(step)


def _first_title_candidate(lines: List[str]) -> str:
    for line in lines:
        if _is_meta_line(line) or _split_header(line) is not None:
            continue
        return line
    return DEFAULT_RECIPE_NAME


def parse_recipe_with_rules(text: str) -> CanonicalRecipe:
    lines = [line.strip() for line in (text or "").splitlines() if line.strip()]
    timing = _Timing()
    recipe = _parse_structured(lines, timing)

    if recipe.is_empty() and lines:
        _parse_unstructured("\n".join(lines), recipe)

    if not recipe.name:
        recipe.name = _first_title_candidate(lines)
    if len(recipe.name) > NAME_MAX_CHARS:
        recipe.name = recipe.name[:NAME_MAX_CHARS].rstrip()

    recipe.prep_time = timing.prep_time
    recipe.cook_time = timing.cook_time
    recipe.servings = timing.servings
    return recipe
