"""Evidence acquisition: one ordered fallback chain per input kind.

Every chain is tried strictly in order, one external call at a time. A step
fails when its collaborator raises ``ExternalServiceError`` or when it returns
less text than the step's minimum; the next step is then tried. When the whole
chain fails the caller gets an ``ImportFailedError`` listing manual
alternatives.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple

from services.errors import ExternalServiceError, ImportFailedError
from services.models import CanonicalRecipe, Evidence, FileInput
from services.structured_data import extract_open_graph, extract_page_text, extract_recipes_from_html
from services.text_normalizer import normalize
from services.transcriber import Transcriber, local_path
from services.video_extract import VideoContentExtractor, VideoExtraction, VideoExtractionOptions
from services.vision import ImageRecipeImporter, encode_data_url
from services.web_fetch import PageFetcher, canonicalize_video_url

logger = logging.getLogger(__name__)

MIN_PAGE_CHARS = 50
MIN_READER_CHARS = 50
MIN_TRANSCRIPT_CHARS = 10
MIN_VIDEO_CONTENT_CHARS = 20


def merge_signals(parts: Iterable[Optional[str]]) -> str:
    """Normalize each signal, then keep unique lines (case-insensitive) in first-seen order."""
    seen = set()
    lines: List[str] = []
    for part in parts:
        if not part:
            continue
        for line in normalize(part).splitlines():
            line = line.strip()
            key = line.lower()
            if not line or key in seen:
                continue
            seen.add(key)
            lines.append(line)
    return "\n".join(lines)


@dataclass
class Strategy:
    name: str
    run: Callable[[], Awaitable[Any]]
    min_chars: int = 0
    text_of: Callable[[Any], str] = str


async def first_success(
    strategies: Sequence[Strategy], *, failure_message: str = "Could not extract any recipe content"
) -> Tuple[str, Any]:
    last_error: Optional[Exception] = None
    for strategy in strategies:
        try:
            value = await strategy.run()
        except ExternalServiceError as exc:
            logger.warning("Strategy %s failed: %s", strategy.name, exc)
            last_error = exc
            continue

        size = len((strategy.text_of(value) or "").strip()) if value is not None else 0
        if size < strategy.min_chars:
            logger.info(
                "Strategy %s produced %d chars (< %d); trying next", strategy.name, size, strategy.min_chars
            )
            last_error = ExternalServiceError(strategy.name, f"only {size} characters extracted")
            continue
        return strategy.name, value

    raise ImportFailedError(failure_message) from last_error


class EvidenceAcquirer:
    """Collects evidence text for each input kind from the injected collaborators."""

    def __init__(
        self,
        *,
        fetcher: Optional[PageFetcher] = None,
        transcriber: Optional[Transcriber] = None,
        video_extractor: Optional[VideoContentExtractor] = None,
        image_importer: Optional[ImageRecipeImporter] = None,
        video_options: Optional[VideoExtractionOptions] = None,
        language: Optional[str] = None,
    ):
        self.fetcher = fetcher
        self.transcriber = transcriber
        self.video_extractor = video_extractor
        self.image_importer = image_importer
        self.video_options = video_options or VideoExtractionOptions()
        self.language = language

    def _require(self, collaborator: Any, service: str) -> Any:
        if collaborator is None:
            raise ExternalServiceError(service, "not configured")
        return collaborator

    # ---- recipe-url ----

    async def for_recipe_url(self, url: str) -> Evidence:
        fetcher = self._require(self.fetcher, "page")

        async def direct() -> str:
            return await asyncio.to_thread(fetcher.fetch_html, url)

        async def reader() -> str:
            return await asyncio.to_thread(fetcher.fetch_reader_text, url)

        name, content = await first_success(
            [
                Strategy("direct-fetch", direct, MIN_PAGE_CHARS),
                Strategy("reader-proxy", reader, MIN_READER_CHARS),
            ],
            failure_message="Could not load the recipe page",
        )
        if name == "reader-proxy":
            return Evidence(text=content, page_text=content, methods=[name], source_url=url)

        page_text = extract_page_text(content)
        return Evidence(
            text=page_text,
            page_text=page_text,
            methods=[name],
            source_url=url,
            json_ld=extract_recipes_from_html(content),
            open_graph=extract_open_graph(content),
        )

    # ---- text ----

    def for_text(self, text: str) -> Evidence:
        return Evidence(text=text or "", methods=["text"])

    # ---- image-file ----

    async def image_recipe(self, file_input: FileInput) -> CanonicalRecipe:
        importer = self._require(self.image_importer, "vision")

        async def vision() -> CanonicalRecipe:
            path = local_path(file_input.uri)
            try:
                data_url = await asyncio.to_thread(encode_data_url, Path(path), file_input.mime)
            except OSError as exc:
                raise ExternalServiceError("vision", f"cannot read image: {exc}") from exc
            return await asyncio.to_thread(importer.import_from_image, data_url)

        _, recipe = await first_success(
            [Strategy("vision", vision)], failure_message="Could not read a recipe from the image"
        )
        return recipe

    # ---- video-url ----

    async def resolve_video_url(self, url: str) -> str:
        canonical = canonicalize_video_url(url)
        if self.fetcher is None:
            return canonical
        try:
            resolved = await asyncio.to_thread(self.fetcher.resolve, canonical)
        except ExternalServiceError as exc:
            logger.info("Keeping canonical URL %s: %s", canonical, exc)
            return canonical
        return canonicalize_video_url(resolved) if resolved else canonical

    async def for_video_url(self, url: str) -> Evidence:
        resolved = await self.resolve_video_url(url)

        async def reader() -> str:
            fetcher = self._require(self.fetcher, "reader")
            return await asyncio.to_thread(fetcher.fetch_reader_text, resolved)

        async def transcript() -> str:
            transcriber = self._require(self.transcriber, "transcription")
            result = await asyncio.to_thread(
                lambda: transcriber.transcribe(url=resolved, language=self.language)
            )
            return str(result.get("text") or "")

        name, content = await first_success(
            [
                Strategy("reader-proxy", reader, MIN_READER_CHARS),
                Strategy("audio-transcription", transcript, MIN_TRANSCRIPT_CHARS),
            ],
            failure_message="Could not extract recipe content from the video link",
        )
        if name == "reader-proxy":
            return Evidence(text=merge_signals([content]), page_text=content, methods=[name], source_url=resolved)
        return Evidence(text=merge_signals([content]), transcript=content, methods=[name], source_url=resolved)

    # ---- video-file ----

    async def for_video_file(self, file_input: FileInput) -> Evidence:
        async def combined() -> VideoExtraction:
            extractor = self._require(self.video_extractor, "video")
            return await asyncio.to_thread(extractor.extract, file_input.uri, self.video_options)

        async def audio_only() -> str:
            transcriber = self._require(self.transcriber, "transcription")
            result = await asyncio.to_thread(
                lambda: transcriber.transcribe(
                    uri=file_input.uri, mime=file_input.mime, language=self.language
                )
            )
            return str(result.get("text") or "")

        name, content = await first_success(
            [
                Strategy(
                    "combined-extraction",
                    combined,
                    MIN_VIDEO_CONTENT_CHARS,
                    text_of=lambda extraction: extraction.merged_content,
                ),
                Strategy("audio-transcription", audio_only, MIN_TRANSCRIPT_CHARS),
            ],
            failure_message="Could not extract recipe content from the video",
        )

        if isinstance(content, VideoExtraction):
            ocr_text = "\n".join(content.frame_texts)
            return Evidence(
                text=merge_signals([content.captions, ocr_text, content.audio_transcript]),
                caption=content.captions or None,
                transcript=content.audio_transcript or None,
                ocr_text=ocr_text or None,
                methods=list(content.metadata.get("extraction_methods", [name])),
                confidence=content.metadata.get("confidence"),
            )
        return Evidence(text=merge_signals([content]), transcript=content, methods=[name])
