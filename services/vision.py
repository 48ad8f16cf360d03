import base64
import logging
import mimetypes
import re
from pathlib import Path
from typing import Optional, Tuple

from services.errors import ExternalServiceError, ReconciliationParseError
from services.llm import OllamaClient
from services.models import CanonicalRecipe, recipe_from_dict
from services.reconciler import extract_json

logger = logging.getLogger(__name__)

VISION_TEMPERATURE = 0.2

VISION_SYSTEM_PROMPT = "\n".join(
    [
        "Output rule: Return STRICT JSON only (no markdown, no commentary).",
        "You parse a recipe photo or screenshot (web page, social video frame, handwritten notes).",
        "Policy: conservative.",
        "Rules: no guesses; no invented ingredients; quantities only if explicit.",
        "Use short units (g, ml, tbsp, tsp, cup, pcs). Keep steps as written.",
        "Return JSON exactly:",
        '{"name": string | null, "description"?: string, "ingredients": [{"name": string, '
        '"quantity"?: number | string, "unit"?: string, "optional"?: boolean}], "steps": string[], '
        '"tags": string[], "prepTime"?: number | null, "cookTime"?: number | null, "servings"?: number | null}',
        'If the image cannot support both ingredients and steps: {"abstain": true, "reason": "insufficient_ocr_evidence"}',
    ]
)

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.+)$", re.DOTALL)


def encode_data_url(path: Path, mime: Optional[str] = None) -> str:
    mime = mime or mimetypes.guess_type(str(path))[0] or "image/jpeg"
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime};base64,{encoded}"


def split_data_url(data_url: str) -> Tuple[str, str]:
    match = _DATA_URL_RE.match(data_url.strip())
    if not match:
        raise ExternalServiceError("vision", "image must be a base64 data URL")
    return match.group("mime"), match.group("data")


class ImageRecipeImporter:
    """Reads a recipe out of an image with a vision model behind the Ollama client."""

    def __init__(self, client: OllamaClient):
        self.client = client

    def import_from_image(self, data_url: str) -> CanonicalRecipe:
        _, image_b64 = split_data_url(data_url)
        messages = [
            {"role": "system", "content": VISION_SYSTEM_PROMPT},
            {"role": "user", "content": "Extract the full recipe from this image as strict JSON."},
        ]
        raw = self.client.complete(messages, temperature=VISION_TEMPERATURE, images=[image_b64])
        try:
            data = extract_json(raw)
        except ReconciliationParseError as exc:
            raise ExternalServiceError("vision", "response was not valid JSON") from exc
        if not isinstance(data, dict):
            raise ExternalServiceError("vision", "response was not a JSON object")
        if data.get("abstain"):
            logger.info("Vision model abstained: %s", data.get("reason", "unspecified"))
            return CanonicalRecipe()
        try:
            return recipe_from_dict(data)
        except Exception as exc:
            logger.exception("Vision response had an unusable shape")
            raise ExternalServiceError("vision", "response did not describe a recipe") from exc
