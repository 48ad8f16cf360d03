import re
from typing import Dict, Tuple

UNIT_ALIASES: Dict[str, str] = {
    "cup": "cup",
    "cups": "cup",
    "c": "cup",
    "tbsp": "tbsp",
    "tbsps": "tbsp",
    "tbs": "tbsp",
    "tablespoon": "tbsp",
    "tablespoons": "tbsp",
    "tsp": "tsp",
    "tsps": "tsp",
    "teaspoon": "tsp",
    "teaspoons": "tsp",
    "oz": "oz",
    "ounce": "oz",
    "ounces": "oz",
    "lb": "lb",
    "lbs": "lb",
    "pound": "lb",
    "pounds": "lb",
    "g": "g",
    "gram": "g",
    "grams": "g",
    "kg": "kg",
    "kilogram": "kg",
    "kilograms": "kg",
    "ml": "ml",
    "milliliter": "ml",
    "milliliters": "ml",
    "millilitre": "ml",
    "millilitres": "ml",
    "l": "l",
    "liter": "l",
    "liters": "l",
    "litre": "l",
    "litres": "l",
    "pcs": "pcs",
    "pc": "pcs",
    "piece": "pcs",
    "pieces": "pcs",
    "clove": "clove",
    "cloves": "clove",
    "can": "can",
    "cans": "can",
    "pinch": "pinch",
    "pinches": "pinch",
    "pint": "pint",
    "pints": "pint",
    "pt": "pint",
    "quart": "quart",
    "quarts": "quart",
    "qt": "quart",
}

# Single-letter aliases are too ambiguous to match inside free text ("c" in "c. of").
_TEXT_MATCH_EXCLUDED = {"c"}


def unit_tokens() -> Tuple[str, ...]:
    """Unit spellings usable in a regex alternation, longest first."""
    tokens = [token for token in UNIT_ALIASES if token not in _TEXT_MATCH_EXCLUDED]
    return tuple(sorted(tokens, key=lambda token: (-len(token), token)))


UNIT_PATTERN = "|".join(re.escape(token) for token in unit_tokens())


class UnitNormalizationError(ValueError):
    pass


def normalize_unit_token(unit: str) -> str:
    """Strict lookup: raise when the unit is not in the vocabulary."""
    raw = " ".join(str(unit or "").strip().lower().rstrip(".").split())
    if not raw:
        raise UnitNormalizationError("Unit is required.")
    if raw in UNIT_ALIASES:
        return UNIT_ALIASES[raw]
    # fallback for plural forms not in the alias map
    if raw.endswith("s") and raw[:-1] in UNIT_ALIASES:
        return UNIT_ALIASES[raw[:-1]]
    raise UnitNormalizationError(f"Unsupported unit '{unit}'.")


def normalize_unit(unit: str) -> str:
    """Map a unit spelling to its abbreviation; unknown units come back lower-cased."""
    try:
        return normalize_unit_token(unit)
    except UnitNormalizationError:
        return str(unit or "").strip().lower()
