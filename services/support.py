import re
from typing import Iterable, Set

from services.models import CanonicalRecipe, SupportRates

_NON_TOKEN_RE = re.compile(r"[^\w/.\s]|_")
MIN_TOKEN_LENGTH = 3


def tokenize(text: str) -> Set[str]:
    """Lower-cased tokens of three or more characters; letters, digits, '/' and '.' survive."""
    cleaned = _NON_TOKEN_RE.sub(" ", (text or "").lower())
    tokens = set()
    for raw in cleaned.split():
        token = raw.strip("./")
        if len(token) >= MIN_TOKEN_LENGTH:
            tokens.add(token)
    return tokens


def is_supported(text: str, evidence_tokens: Set[str]) -> bool:
    return bool(tokenize(text) & evidence_tokens)


def _rate(items: Iterable[str], evidence_tokens: Set[str]) -> float:
    items = list(items)
    if not items:
        return 0.0
    supported = sum(1 for item in items if is_supported(item, evidence_tokens))
    return supported / len(items)


def compute_support_rates(evidence_text: str, recipe: CanonicalRecipe) -> SupportRates:
    evidence_tokens = tokenize(evidence_text)
    return SupportRates(
        ingredient_support=_rate((ing.name for ing in recipe.ingredients), evidence_tokens),
        step_support=_rate(recipe.steps, evidence_tokens),
    )
