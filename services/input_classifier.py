"""Decide what kind of input an import request carries and whether it is usable."""
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

from services.errors import ValidationError
from services.models import (
    FileInput,
    InputClassification,
    InputKind,
    RawImportInput,
    TextInput,
    UrlInput,
)
from services.web_fetch import ensure_scheme

logger = logging.getLogger(__name__)

PLATFORM_PATTERNS: Dict[str, List["re.Pattern[str]"]] = {
    "tiktok": [
        re.compile(r"(?:https?://)?(?:www\.)?(?:vm\.)?tiktok\.com", re.I),
        re.compile(r"(?:https?://)?(?:www\.)?tiktok\.com/.*/video/", re.I),
    ],
    "instagram": [
        re.compile(r"(?:https?://)?(?:www\.)?instagram\.com/(?:p|reel|reels)/", re.I),
        re.compile(r"(?:https?://)?(?:www\.)?instagram\.com/stories/", re.I),
    ],
    "youtube": [
        re.compile(r"(?:https?://)?(?:www\.|m\.)?youtube\.com/watch\?(?:.*&)?v=", re.I),
        re.compile(r"(?:https?://)?(?:www\.|m\.)?youtube\.com/shorts/", re.I),
        re.compile(r"(?:https?://)?youtu\.be/[A-Za-z0-9_-]+", re.I),
    ],
    "facebook": [
        re.compile(r"(?:https?://)?(?:www\.|m\.)?facebook\.com/.*/videos/", re.I),
        re.compile(r"(?:https?://)?(?:www\.|m\.)?facebook\.com/watch", re.I),
        re.compile(r"(?:https?://)?fb\.watch/[A-Za-z0-9]+", re.I),
    ],
    "pinterest": [
        re.compile(r"(?:https?://)?(?:www\.)?pinterest\.com/pin/", re.I),
        re.compile(r"(?:https?://)?pin\.it/[A-Za-z0-9]+", re.I),
    ],
    "vimeo": [
        re.compile(r"(?:https?://)?(?:www\.|player\.)?vimeo\.com/(?:video/)?\d+", re.I),
    ],
}

VIDEO_URL_PATTERNS: List["re.Pattern[str]"] = (
    PLATFORM_PATTERNS["tiktok"]
    + [pattern for pattern in PLATFORM_PATTERNS["instagram"] if "reel" in pattern.pattern]
    + PLATFORM_PATTERNS["youtube"]
    + PLATFORM_PATTERNS["facebook"]
    + PLATFORM_PATTERNS["vimeo"]
)

# Instagram's post pattern alternates p|reel|reels; a reel needs its own check.
_INSTAGRAM_REEL_RE = re.compile(r"instagram\.com/reels?/", re.I)
_TIKTOK_VIDEO_RE = re.compile(r"tiktok\.com/.*/video/|vm\.tiktok\.com/[A-Za-z0-9]+", re.I)

RECIPE_SITE_PATTERNS = [
    re.compile(pattern, re.I)
    for pattern in (
        r"allrecipes\.com",
        r"foodnetwork\.com",
        r"epicurious\.com",
        r"bonappetit\.com",
        r"seriouseats\.com",
        r"food\.com",
        r"delish\.com",
        r"tasteofhome\.com",
        r"cooking\.nytimes\.com",
        r"recipes?",
    )
]

IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "webp", "heic", "heif", "gif", "bmp"}
VIDEO_EXTENSIONS = {"mp4", "mov", "avi", "webm", "m4v", "mkv", "3gp"}

RECIPE_INDICATORS = [
    re.compile(pattern, re.I)
    for pattern in (
        r"ingredients?:",
        r"directions?:",
        r"instructions?:",
        r"steps?:",
        r"method:",
        r"recipe",
        r"serves?\s+\d+",
        r"prep\s+time",
        r"cook\s+time",
        r"\d+\s+(?:cup|tbsp|tsp|oz|lb|kg|g|ml|liter)",
    )
]
BULLET_LINE_RE = re.compile(r"^[-•*]\s")
NUMBERED_LINE_RE = re.compile(r"^\d+\.?\s")
MEASUREMENT_RE = re.compile(
    r"\d+\s*(?:cup|tbsp|tsp|tablespoon|teaspoon|oz|ounce|lb|pound|kg|gram|ml|liter)", re.I
)
INGREDIENT_HINT_RE = re.compile(r"ingredients?|\d+\s*(?:cup|tbsp|tsp|oz|lb|kg|g|ml)", re.I)
STEP_HINT_RE = re.compile(r"steps?|directions?|instructions?|method", re.I)
NUMBERED_STEP_RE = re.compile(r"^\d+\.", re.M)

MAX_TEXT_CHARS = 50_000
MIN_TEXT_CHARS = 10
MAX_IMAGE_BYTES = 10 * 1024 * 1024
MIN_IMAGE_BYTES = 1024
MAX_VIDEO_BYTES = 100 * 1024 * 1024
LARGE_VIDEO_BYTES = 50 * 1024 * 1024

# Kinds that proceed best-effort: validation errors become warnings.
BEST_EFFORT_KINDS = {InputKind.TEXT, InputKind.IMAGE_FILE}

PLATFORM_HINTS: Dict[str, Tuple[str, ...]] = {
    "tiktok": (
        "TikTok videos work best when they show ingredients and steps clearly",
        "Consider using the transcription feature for better accuracy",
    ),
    "instagram": (
        "Instagram Reels often have recipe details in captions",
        "Screenshots of recipe cards work well too",
    ),
    "youtube": (
        "YouTube videos with clear ingredient lists in description work best",
        "Cooking channels often have timestamps for ingredients",
    ),
    "recipe-site": ("Recipe websites usually have structured data for best results",),
}
TEXT_HINTS = (
    "For best results, include both ingredients list and cooking steps",
    "Use clear formatting with bullet points or numbers",
)
IMAGE_HINTS = (
    "Ensure text is clear and well-lit for better OCR results",
    "Recipe cards and screenshots work better than photos of printed recipes",
)
VIDEO_HINTS = (
    "Videos with clear narration or on-screen text work best",
    "Consider extracting a screenshot if video quality is poor",
)


@dataclass
class _Detection:
    kind: InputKind
    confidence: float
    platform: Optional[str] = None
    is_video_url: bool = False
    size: Optional[int] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def detect_url(raw_url: str) -> _Detection:
    url = ensure_scheme(raw_url)
    for platform, patterns in PLATFORM_PATTERNS.items():
        if any(pattern.search(url) for pattern in patterns):
            is_video = any(pattern.search(url) for pattern in VIDEO_URL_PATTERNS)
            if platform == "instagram":
                is_video = bool(_INSTAGRAM_REEL_RE.search(url))
            return _Detection(
                kind=InputKind.VIDEO_URL if is_video else InputKind.RECIPE_URL,
                confidence=0.95,
                platform=platform,
                is_video_url=is_video,
            )

    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    if any(pattern.search(host) or pattern.search(parsed.path) for pattern in RECIPE_SITE_PATTERNS):
        return _Detection(kind=InputKind.RECIPE_URL, confidence=0.9, platform="recipe-site")
    return _Detection(kind=InputKind.RECIPE_URL, confidence=0.8, platform="generic")


def _file_size(file_input: FileInput) -> Optional[int]:
    if file_input.size is not None:
        return file_input.size
    path = file_input.uri[len("file://"):] if file_input.uri.startswith("file://") else file_input.uri
    try:
        return os.path.getsize(path)
    except OSError:
        return None


def detect_file(file_input: FileInput) -> _Detection:
    mime = (file_input.mime or "").lower()
    size = _file_size(file_input)
    if mime.startswith("image/"):
        return _Detection(kind=InputKind.IMAGE_FILE, confidence=0.95, size=size)
    if mime.startswith("video/"):
        return _Detection(kind=InputKind.VIDEO_FILE, confidence=0.95, size=size)

    name = (file_input.name or file_input.uri or "").lower()
    extension = name.rsplit(".", 1)[-1] if "." in name else ""
    if extension in IMAGE_EXTENSIONS:
        return _Detection(kind=InputKind.IMAGE_FILE, confidence=0.8, size=size)
    if extension in VIDEO_EXTENSIONS:
        return _Detection(kind=InputKind.VIDEO_FILE, confidence=0.8, size=size)
    return _Detection(kind=InputKind.IMAGE_FILE, confidence=0.3, size=size)


def text_confidence(text: str) -> float:
    stripped = (text or "").strip()
    if not stripped:
        return 0.0
    lines = [line.strip() for line in stripped.splitlines() if line.strip()]
    confidence = 0.5
    confidence += 0.1 * sum(1 for pattern in RECIPE_INDICATORS if pattern.search(stripped))
    if sum(1 for line in lines if BULLET_LINE_RE.match(line)) > 2:
        confidence += 0.2
    if sum(1 for line in lines if NUMBERED_LINE_RE.match(line)) > 2:
        confidence += 0.2
    if len(MEASUREMENT_RE.findall(stripped)) > 2:
        confidence += 0.2
    return min(confidence, 0.95)


def _validate_url(raw_url: str, detection: _Detection) -> None:
    url = ensure_scheme(raw_url)
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname or "." not in parsed.hostname:
        detection.errors.append("Invalid URL format")
        return
    if parsed.scheme == "http":
        detection.warnings.append("URL uses HTTP instead of HTTPS - some content may not be accessible")
    if detection.platform == "tiktok" and not _TIKTOK_VIDEO_RE.search(url):
        detection.warnings.append("This appears to be a TikTok profile link rather than a specific video")
    if detection.platform == "instagram" and "/reel" not in parsed.path:
        detection.warnings.append("Instagram posts work best - Reels may have better recipe content")


def _validate_text(text: str, detection: _Detection) -> None:
    if len(text.strip()) < MIN_TEXT_CHARS:
        detection.errors.append("Text is too short to contain a meaningful recipe")
        return
    if len(text) > MAX_TEXT_CHARS:
        detection.warnings.append("Text is very long - processing may take extra time")
    if detection.confidence < 0.5:
        detection.warnings.append("Text does not appear to contain a structured recipe - results may vary")
    if not INGREDIENT_HINT_RE.search(text):
        detection.warnings.append("No ingredients list detected - will attempt to extract from context")
    if not STEP_HINT_RE.search(text) and not NUMBERED_STEP_RE.search(text):
        detection.warnings.append("No cooking steps detected - will attempt to extract from context")


def _validate_image(detection: _Detection) -> None:
    if detection.size and detection.size > MAX_IMAGE_BYTES:
        detection.errors.append("Image file is too large (max 10MB)")
    if detection.size and detection.size < MIN_IMAGE_BYTES:
        detection.warnings.append("Image file is very small - text may be difficult to read")
    if detection.confidence < 0.8:
        detection.warnings.append("File type detection uncertain - ensure this is a valid image file")


def _validate_video(detection: _Detection) -> None:
    if detection.size and detection.size > MAX_VIDEO_BYTES:
        detection.errors.append("Video file is too large (max 100MB)")
    if detection.size and detection.size > LARGE_VIDEO_BYTES:
        detection.warnings.append("Large video file - processing may take several minutes")
    if detection.confidence < 0.8:
        detection.warnings.append("File type detection uncertain - ensure this is a valid video file")
    detection.warnings.append(
        "Video processing requires transcription - ensure video has clear audio or captions"
    )


def platform_hints(detection: _Detection) -> Tuple[str, ...]:
    hints: List[str] = []
    if detection.kind in (InputKind.RECIPE_URL, InputKind.VIDEO_URL) and detection.platform:
        hints.extend(PLATFORM_HINTS.get(detection.platform, ()))
    if detection.kind == InputKind.TEXT and detection.confidence < 0.7:
        hints.extend(TEXT_HINTS)
    if detection.kind == InputKind.IMAGE_FILE:
        hints.extend(IMAGE_HINTS)
    if detection.kind == InputKind.VIDEO_FILE:
        hints.extend(VIDEO_HINTS)
    return tuple(hints)


def classify(raw: RawImportInput) -> InputClassification:
    if isinstance(raw, UrlInput):
        detection = detect_url(raw.url)
        _validate_url(raw.url, detection)
    elif isinstance(raw, FileInput):
        detection = detect_file(raw)
        if detection.kind == InputKind.VIDEO_FILE:
            _validate_video(detection)
        else:
            _validate_image(detection)
    elif isinstance(raw, TextInput):
        detection = _Detection(kind=InputKind.TEXT, confidence=text_confidence(raw.text))
        _validate_text(raw.text or "", detection)
    else:
        raise ValidationError([f"Unsupported input type: {type(raw).__name__}"])

    errors, warnings = list(detection.errors), list(detection.warnings)
    if detection.kind in BEST_EFFORT_KINDS and errors:
        warnings = errors + warnings
        errors = []

    return InputClassification(
        kind=detection.kind,
        confidence=detection.confidence,
        platform=detection.platform,
        is_video_url=detection.is_video_url,
        validation_errors=tuple(errors),
        validation_warnings=tuple(warnings),
        hints=platform_hints(detection),
    )


def raise_for_validation(classification: InputClassification) -> None:
    if classification.validation_errors:
        raise ValidationError(classification.validation_errors)
