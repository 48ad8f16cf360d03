"""Model-assisted cleanup of a rule-based parse, bound to what the parse already found.

The completion model may fix quantities, units and gaps in metadata. It can
never introduce an ingredient the rule-based parser did not see, and it only
contributes steps under the ``enrich`` policy when the evidence supports them.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from services.errors import ExternalServiceError, ReconciliationParseError
from services.models import (
    DEFAULT_RECIPE_NAME,
    CanonicalRecipe,
    Ingredient,
    ParsePolicy,
    clamp_unit,
    recipe_from_dict,
)
from services.support import is_supported, tokenize

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 0.6
DEFAULT_MODEL_CONFIDENCE = 0.7
PARSE_FAILURE_NOTE = "Failed to parse reconciliation response."

RECONCILE_SYSTEM_PROMPT = "\n".join(
    [
        "Output rule: Return STRICT JSON only (no markdown, no commentary).",
        "You are a conservative recipe validator. You receive a PRELIMINARY_JSON recipe "
        "and the EVIDENCE text it was parsed from.",
        "Make minimal corrections only:",
        "- Fix unit shorthands (cup, tbsp, tsp, oz, lb, g, kg, ml, l, pcs, clove, can, pinch).",
        "- Fix fractions broken by transcription (\"1 2 cup\" -> \"1/2 cup\"). Preserve fraction formatting.",
        "- Never invent ingredients and never drop ingredients from the preliminary list.",
        "- Never rewrite instructions.",
        "- REMOVE nothing silently: record a note for every change.",
        'Return {"recipe": {...same shape as PRELIMINARY_JSON...}, "notes": [string], "confidence": number}.',
    ]
)


class CompletionClient(Protocol):
    def complete(
        self,
        messages: Sequence[Dict[str, str]],
        *,
        temperature: Optional[float] = None,
        images: Optional[Sequence[str]] = None,
    ) -> str:
        ...


@dataclass
class ReconcileOutcome:
    recipe: CanonicalRecipe
    notes: List[str] = field(default_factory=list)
    confidence: float = FALLBACK_CONFIDENCE
    applied: bool = True


# ---- defensive JSON extraction ----

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.IGNORECASE | re.DOTALL)


def _parse_direct(text: str) -> Any:
    return json.loads(text)


def _parse_fenced(text: str) -> Any:
    match = _FENCE_RE.search(text)
    if not match:
        raise ValueError("no fenced block")
    return json.loads(match.group(1).strip())


def _parse_brace_span(text: str) -> Any:
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("no brace span")
    return json.loads(text[start:end + 1])


_EXTRACTORS: Sequence[Callable[[str], Any]] = (_parse_direct, _parse_fenced, _parse_brace_span)


def extract_json(text: str) -> Any:
    """Direct parse, then a fenced block, then the first '{' to last '}'."""
    cleaned = (text or "").strip()
    for extractor in _EXTRACTORS:
        try:
            return extractor(cleaned)
        except ValueError:
            continue
    raise ReconciliationParseError("No JSON object found in model output")


# ---- binding ----


def should_reconcile(recipe: CanonicalRecipe, policy: ParsePolicy) -> bool:
    return policy != ParsePolicy.VERBATIM and not recipe.is_well_formed()


def _best_match(
    ingredient: Ingredient, candidates: List[Ingredient], used: set
) -> Optional[int]:
    wanted = tokenize(ingredient.name)
    best_index, best_overlap = None, 0
    for index, candidate in enumerate(candidates):
        if index in used:
            continue
        overlap = len(wanted & tokenize(candidate.name))
        if overlap > best_overlap:
            best_index, best_overlap = index, overlap
    return best_index


def _bind_ingredients(
    preliminary: List[Ingredient], candidates: List[Ingredient], notes: List[str]
) -> List[Ingredient]:
    used: set = set()
    bound: List[Ingredient] = []
    for original in preliminary:
        index = _best_match(original, candidates, used)
        if index is None:
            notes.append(f"Kept '{original.name}' from the rule-based parse")
            bound.append(original)
            continue
        used.add(index)
        candidate = candidates[index]
        merged = Ingredient(
            name=original.name,
            quantity=candidate.quantity or original.quantity,
            unit=candidate.unit or original.unit,
            optional=original.optional or candidate.optional,
        )
        if (merged.quantity, merged.unit) != (original.quantity, original.unit):
            notes.append(f"Corrected quantity/unit for '{original.name}'")
        bound.append(merged)

    for index, candidate in enumerate(candidates):
        if index not in used:
            notes.append(f"Dropped '{candidate.name}': not present in the rule-based parse")
    return bound


def _bind_steps(
    preliminary: CanonicalRecipe,
    candidate: CanonicalRecipe,
    evidence_text: str,
    policy: ParsePolicy,
    notes: List[str],
) -> List[str]:
    if preliminary.steps or not candidate.steps:
        return list(preliminary.steps)
    if policy != ParsePolicy.ENRICH:
        notes.append(f"Ignored {len(candidate.steps)} suggested steps under {policy.value} policy")
        return []
    evidence_tokens = tokenize(evidence_text)
    steps = []
    for step in candidate.steps:
        if is_supported(step, evidence_tokens):
            steps.append(step)
        else:
            notes.append(f"Dropped unsupported step: {step[:60]}")
    return steps


def bind_to_preliminary(
    preliminary: CanonicalRecipe,
    candidate: CanonicalRecipe,
    evidence_text: str,
    policy: ParsePolicy,
) -> ReconcileOutcome:
    notes: List[str] = []
    name = preliminary.name
    if (not name or name == DEFAULT_RECIPE_NAME) and candidate.name != DEFAULT_RECIPE_NAME:
        name = candidate.name
    recipe = CanonicalRecipe(
        name=name or DEFAULT_RECIPE_NAME,
        description=preliminary.description or candidate.description,
        ingredients=_bind_ingredients(preliminary.ingredients, candidate.ingredients, notes),
        steps=_bind_steps(preliminary, candidate, evidence_text, policy, notes),
        prep_time=preliminary.prep_time if preliminary.prep_time is not None else candidate.prep_time,
        cook_time=preliminary.cook_time if preliminary.cook_time is not None else candidate.cook_time,
        servings=preliminary.servings if preliminary.servings is not None else candidate.servings,
        tags=list(preliminary.tags) or list(candidate.tags),
        image_url=preliminary.image_url,
    )
    return ReconcileOutcome(recipe=recipe, notes=notes)


class AIReconciler:
    def __init__(self, client: CompletionClient, *, temperature: float = 0.0):
        self.client = client
        self.temperature = temperature

    def _messages(self, preliminary: CanonicalRecipe, evidence_text: str) -> List[Dict[str, str]]:
        user = (
            f"PRELIMINARY_JSON\n{json.dumps(preliminary.to_dict(), ensure_ascii=False)}"
            f"\n\nEVIDENCE\n{evidence_text}"
        )
        return [
            {"role": "system", "content": RECONCILE_SYSTEM_PROMPT},
            {"role": "user", "content": user},
        ]

    def reconcile(
        self,
        preliminary: CanonicalRecipe,
        evidence_text: str,
        policy: ParsePolicy,
    ) -> ReconcileOutcome:
        """Never raises: any failure returns the preliminary recipe untouched."""
        try:
            raw = self.client.complete(
                self._messages(preliminary, evidence_text), temperature=self.temperature
            )
        except ExternalServiceError as exc:
            logger.warning("Reconciliation unavailable: %s", exc)
            return ReconcileOutcome(
                recipe=preliminary,
                notes=[f"Reconciliation unavailable: {exc}"],
                confidence=FALLBACK_CONFIDENCE,
                applied=False,
            )

        try:
            parsed = extract_json(raw)
        except ReconciliationParseError:
            logger.warning("Reconciliation response was not JSON (%d chars)", len(raw or ""))
            return ReconcileOutcome(
                recipe=preliminary, notes=[PARSE_FAILURE_NOTE], confidence=FALLBACK_CONFIDENCE, applied=False
            )

        if not isinstance(parsed, dict):
            return ReconcileOutcome(
                recipe=preliminary, notes=[PARSE_FAILURE_NOTE], confidence=FALLBACK_CONFIDENCE, applied=False
            )

        payload = parsed.get("recipe") if isinstance(parsed.get("recipe"), dict) else parsed
        try:
            candidate = recipe_from_dict(payload)
            outcome = bind_to_preliminary(preliminary, candidate, evidence_text, policy)
        except Exception:
            logger.exception("Reconciliation response had an unusable shape")
            return ReconcileOutcome(
                recipe=preliminary, notes=[PARSE_FAILURE_NOTE], confidence=FALLBACK_CONFIDENCE, applied=False
            )

        model_notes = parsed.get("notes")
        if isinstance(model_notes, list):
            outcome.notes.extend(str(note) for note in model_notes if str(note).strip())
        outcome.confidence = clamp_unit(parsed.get("confidence"), default=DEFAULT_MODEL_CONFIDENCE)
        return outcome
