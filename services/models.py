"""Data model for the recipe import pipeline."""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from services.errors import ValidationError
from services.units import normalize_unit

DEFAULT_RECIPE_NAME = "Imported Recipe"


def clamp_unit(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return min(max(number, 0.0), 1.0)


class InputKind(str, Enum):
    RECIPE_URL = "recipe-url"
    VIDEO_URL = "video-url"
    TEXT = "text"
    IMAGE_FILE = "image-file"
    VIDEO_FILE = "video-file"


class ParsePolicy(str, Enum):
    VERBATIM = "verbatim"
    CONSERVATIVE = "conservative"
    ENRICH = "enrich"


SOURCE_BY_KIND: Dict[InputKind, str] = {
    InputKind.RECIPE_URL: "url",
    InputKind.VIDEO_URL: "video",
    InputKind.TEXT: "text",
    InputKind.IMAGE_FILE: "image",
    InputKind.VIDEO_FILE: "video",
}


# ---- raw input (tagged union) ----


@dataclass(frozen=True)
class UrlInput:
    url: str


@dataclass(frozen=True)
class TextInput:
    text: str


@dataclass(frozen=True)
class FileInput:
    uri: str
    mime: Optional[str] = None
    name: Optional[str] = None
    size: Optional[int] = None


RawImportInput = Union[UrlInput, TextInput, FileInput]


def coerce_input(payload: Union[RawImportInput, Mapping[str, Any]]) -> RawImportInput:
    """Accept a typed input or a mapping with exactly one of url/text/file."""
    if isinstance(payload, (UrlInput, TextInput, FileInput)):
        return payload
    if not isinstance(payload, Mapping):
        raise ValidationError([f"Unsupported input type: {type(payload).__name__}"])

    populated = [key for key in ("url", "text", "file") if payload.get(key) is not None]
    if len(populated) != 1:
        raise ValidationError(["Exactly one of url, text or file must be provided"])

    key = populated[0]
    if key == "url":
        return UrlInput(url=str(payload["url"]).strip())
    if key == "text":
        return TextInput(text=str(payload["text"]))

    file_data = payload["file"]
    if isinstance(file_data, str):
        return FileInput(uri=file_data)
    if not isinstance(file_data, Mapping) or not file_data.get("uri"):
        raise ValidationError(["File input requires a uri"])
    size = file_data.get("size")
    return FileInput(
        uri=str(file_data["uri"]),
        mime=file_data.get("mime") or None,
        name=file_data.get("name") or None,
        size=int(size) if size is not None else None,
    )


# ---- classification ----


@dataclass(frozen=True)
class InputClassification:
    kind: InputKind
    confidence: float
    platform: Optional[str] = None
    is_video_url: bool = False
    validation_errors: Tuple[str, ...] = ()
    validation_warnings: Tuple[str, ...] = ()
    hints: Tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.validation_errors


# ---- evidence ----


@dataclass(frozen=True)
class EvidenceSizes:
    caption: int = 0
    transcript: int = 0
    ocr: int = 0
    page: int = 0
    merged: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class Evidence:
    text: str
    caption: Optional[str] = None
    transcript: Optional[str] = None
    ocr_text: Optional[str] = None
    page_text: Optional[str] = None
    methods: List[str] = field(default_factory=list)
    confidence: Optional[float] = None
    source_url: Optional[str] = None
    json_ld: List[Dict[str, Any]] = field(default_factory=list)
    open_graph: Dict[str, str] = field(default_factory=dict)

    def sizes(self) -> EvidenceSizes:
        return EvidenceSizes(
            caption=len(self.caption or ""),
            transcript=len(self.transcript or ""),
            ocr=len(self.ocr_text or ""),
            page=len(self.page_text or ""),
            merged=len(self.text or ""),
        )


# ---- recipe ----


@dataclass
class Ingredient:
    name: str
    quantity: Optional[str] = None
    unit: Optional[str] = None
    optional: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CanonicalRecipe:
    name: str = DEFAULT_RECIPE_NAME
    description: str = ""
    ingredients: List[Ingredient] = field(default_factory=list)
    steps: List[str] = field(default_factory=list)
    prep_time: Optional[int] = None
    cook_time: Optional[int] = None
    servings: Optional[int] = None
    tags: List[str] = field(default_factory=list)
    image_url: Optional[str] = None

    def is_empty(self) -> bool:
        return not self.ingredients and not self.steps

    def is_well_formed(self) -> bool:
        if not self.ingredients or not self.steps:
            return False
        return all((ing.name or "").strip() for ing in self.ingredients)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _coerce_quantity(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value) or value <= 0:
            return None
        return f"{value:g}"
    text = " ".join(str(value).split())
    return text or None


def _coerce_minutes(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        minutes = int(round(float(value)))
    except (TypeError, ValueError, OverflowError):
        return None
    return minutes if minutes >= 0 else None


def _as_list(value: Any) -> List[Any]:
    """Model output sometimes puts a scalar where a list belongs."""
    return list(value) if isinstance(value, (list, tuple)) else []


def recipe_from_dict(data: Mapping[str, Any]) -> CanonicalRecipe:
    """Coerce loosely-shaped JSON (model output, API payloads) into a recipe."""
    ingredients: List[Ingredient] = []
    for raw in _as_list(data.get("ingredients")):
        if isinstance(raw, str):
            name = raw.strip()
            if name:
                ingredients.append(Ingredient(name=name))
            continue
        if not isinstance(raw, Mapping):
            continue
        name = str(raw.get("name") or "").strip()
        if not name:
            continue
        unit = str(raw.get("unit") or "").strip()
        ingredients.append(
            Ingredient(
                name=name,
                quantity=_coerce_quantity(raw.get("quantity")),
                unit=normalize_unit(unit) if unit else None,
                optional=bool(raw.get("optional", False)),
            )
        )

    raw_steps = data.get("steps")
    if raw_steps is None:
        raw_steps = data.get("instructions")
    steps = [str(step).strip() for step in _as_list(raw_steps) if str(step or "").strip()]

    servings = _coerce_minutes(data.get("servings"))
    return CanonicalRecipe(
        name=str(data.get("name") or data.get("title") or "").strip() or DEFAULT_RECIPE_NAME,
        description=str(data.get("description") or "").strip(),
        ingredients=ingredients,
        steps=steps,
        prep_time=_coerce_minutes(data.get("prep_time", data.get("prepTime"))),
        cook_time=_coerce_minutes(data.get("cook_time", data.get("cookTime"))),
        servings=servings if servings else None,
        tags=[str(tag).strip() for tag in _as_list(data.get("tags")) if str(tag or "").strip()],
        image_url=(str(data.get("image_url") or data.get("imageUrl") or "").strip() or None),
    )


# ---- scoring / provenance ----


@dataclass(frozen=True)
class SupportRates:
    ingredient_support: float = 0.0
    step_support: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "ingredient_support", clamp_unit(self.ingredient_support))
        object.__setattr__(self, "step_support", clamp_unit(self.step_support))

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass
class ImportProvenance:
    source: str
    extraction_method: str
    policy: ParsePolicy
    confidence: float = 0.0
    parser_notes: List[str] = field(default_factory=list)
    support_rates: Optional[SupportRates] = None
    evidence_sizes: Optional[EvidenceSizes] = None
    validation_warnings: List[str] = field(default_factory=list)
    hints: List[str] = field(default_factory=list)
    platform: Optional[str] = None
    detection_confidence: Optional[float] = None
    video_url: Optional[str] = None
    caption: Optional[str] = None
    transcript: Optional[str] = None
    ocr_text: Optional[str] = None
    page_text: Optional[str] = None

    def __post_init__(self) -> None:
        self.confidence = clamp_unit(self.confidence)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["policy"] = self.policy.value
        return data


@dataclass
class ImportResult:
    recipe: CanonicalRecipe
    provenance: ImportProvenance

    def to_dict(self) -> Dict[str, Any]:
        return {"recipe": self.recipe.to_dict(), "provenance": self.provenance.to_dict()}


@dataclass(frozen=True)
class AbstainEvent:
    at: str
    source: str
    reason: str
    support: Optional[SupportRates] = None
    evidence_sizes: Optional[EvidenceSizes] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
