"""Smart import orchestrator: classify, gather evidence, parse, score, gate.

Nothing here is cached across calls. The only process-wide state is the
default importer's abstain telemetry buffer.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Union

from services import metrics
from services.abstain import AbstainGate
from services.command_runner import CommandRunner
from services.errors import ImportAbstainError, ImportFailedError, ValidationError
from services.evidence import EvidenceAcquirer
from services.input_classifier import BEST_EFFORT_KINDS, classify, raise_for_validation
from services.llm import OllamaClient
from services.models import (
    SOURCE_BY_KIND,
    AbstainEvent,
    CanonicalRecipe,
    Evidence,
    FileInput,
    ImportProvenance,
    ImportResult,
    InputClassification,
    InputKind,
    ParsePolicy,
    RawImportInput,
    SupportRates,
    TextInput,
    UrlInput,
    coerce_input,
)
from services.recipe_parser import parse_recipe_with_rules
from services.reconciler import AIReconciler, should_reconcile
from services.structured_data import recipe_from_json_ld
from services.support import compute_support_rates
from services.telemetry import TelemetryRingBuffer
from services.text_normalizer import normalize
from services.transcriber import build_transcriber
from services.video_extract import VideoContentExtractor, VideoExtractionOptions
from services.vision import ImageRecipeImporter
from services.web_fetch import PageFetcher
from smart_import.config import ImportKnobs, get_import_knobs, load_config
from smart_import.logging import correlation_context, log_with_context

logger = logging.getLogger(__name__)

JSON_LD_CONFIDENCE = 0.95
VISION_CONFIDENCE = 0.7
EMPTY_PARSE_CONFIDENCE = 0.2
BASE_CONFIDENCE = 0.3
SUPPORT_WEIGHT = 0.35

EMPTY_PARSE_NOTE = "No ingredients or steps could be recognized in the evidence."
ENRICH_DOWNGRADE_NOTE = "Enrich policy is disabled; using conservative."

# One handler per input kind; checked against InputKind below.
_HANDLERS: Dict[InputKind, str] = {
    InputKind.RECIPE_URL: "_import_recipe_url",
    InputKind.VIDEO_URL: "_import_video_url",
    InputKind.TEXT: "_import_text",
    InputKind.IMAGE_FILE: "_import_image",
    InputKind.VIDEO_FILE: "_import_video_file",
}

_missing = set(InputKind) - set(_HANDLERS)
if _missing:
    raise RuntimeError(f"No import handler for input kinds: {sorted(kind.value for kind in _missing)}")


def resolve_policy(requested: Optional[Union[ParsePolicy, str]], knobs: ImportKnobs) -> tuple[ParsePolicy, List[str]]:
    """Requested policy, else the configured one; enrich needs the allow_enrich knob."""
    try:
        policy = ParsePolicy(requested or knobs.policy)
    except ValueError as exc:
        raise ValidationError([f"Unknown parse policy: {requested}"]) from exc
    if policy == ParsePolicy.ENRICH and not knobs.allow_enrich:
        return ParsePolicy.CONSERVATIVE, [ENRICH_DOWNGRADE_NOTE]
    return policy, []


def evidence_confidence(recipe: CanonicalRecipe, rates: SupportRates) -> float:
    if recipe.is_empty():
        return EMPTY_PARSE_CONFIDENCE
    return BASE_CONFIDENCE + SUPPORT_WEIGHT * rates.ingredient_support + SUPPORT_WEIGHT * rates.step_support


class SmartImporter:
    def __init__(
        self,
        acquirer: EvidenceAcquirer,
        *,
        knobs: Optional[ImportKnobs] = None,
        telemetry: Optional[TelemetryRingBuffer] = None,
        reconciler: Optional[AIReconciler] = None,
    ):
        self.acquirer = acquirer
        self.knobs = knobs or ImportKnobs()
        self.telemetry = telemetry or TelemetryRingBuffer(self.knobs.telemetry_capacity)
        self.reconciler = reconciler
        self.gate = AbstainGate(
            self.knobs.min_ingredient_support,
            self.knobs.min_step_support,
            self.telemetry,
        )

    @classmethod
    def from_config(
        cls,
        config: Optional[Dict[str, Any]] = None,
        *,
        telemetry: Optional[TelemetryRingBuffer] = None,
    ) -> "SmartImporter":
        cfg = config if config is not None else load_config()
        knobs = get_import_knobs(cfg)
        runner = CommandRunner()
        transcriber = build_transcriber(cfg, runner=runner)

        video_cfg = cfg.get("video", {})
        language = cfg.get("transcription", {}).get("language")
        video_options = VideoExtractionOptions(
            frame_interval=int(video_cfg.get("frame_interval", 10)),
            max_frames=int(video_cfg.get("max_frames", 8)),
            language=language,
        )

        acquirer = EvidenceAcquirer(
            fetcher=PageFetcher.from_config(cfg),
            transcriber=transcriber,
            video_extractor=VideoContentExtractor(
                runner=runner,
                transcriber=transcriber,
                timeout_seconds=float(video_cfg.get("timeout", 300)),
            ),
            image_importer=ImageRecipeImporter(OllamaClient.from_config(cfg, vision=True)),
            video_options=video_options,
            language=language,
        )

        reconciler = None
        if cfg.get("reconcile", {}).get("enabled", True):
            reconciler = AIReconciler(OllamaClient.from_config(cfg))

        return cls(acquirer, knobs=knobs, telemetry=telemetry, reconciler=reconciler)

    async def run(
        self,
        raw: Union[RawImportInput, Mapping[str, Any]],
        *,
        policy: Optional[Union[ParsePolicy, str]] = None,
    ) -> ImportResult:
        raw_input = coerce_input(raw)
        with correlation_context():
            start_ts = time.time()
            kind = "unknown"
            outcome = "error"
            try:
                classification = classify(raw_input)
                kind = classification.kind.value
                if classification.kind not in BEST_EFFORT_KINDS:
                    raise_for_validation(classification)
                for warning in classification.validation_warnings:
                    logger.info("Input warning (%s): %s", kind, warning)

                handler = getattr(self, _HANDLERS[classification.kind])
                result = await handler(raw_input, classification, policy)
                outcome = "ok"
                log_with_context(
                    logger,
                    logging.INFO,
                    "Recipe imported",
                    kind=kind,
                    source=result.provenance.source,
                    extraction_method=result.provenance.extraction_method,
                    confidence=round(result.provenance.confidence, 2),
                    ingredients=len(result.recipe.ingredients),
                    steps=len(result.recipe.steps),
                )
                return result
            except ImportAbstainError:
                outcome = "abstain"
                raise
            except (ImportFailedError, ValidationError):
                outcome = "failed"
                raise
            finally:
                metrics.record_import(kind, outcome, (time.time() - start_ts) * 1000)

    # ---- per-kind handlers ----

    async def _import_text(
        self, raw: TextInput, classification: InputClassification, policy: Optional[ParsePolicy]
    ) -> ImportResult:
        evidence = self.acquirer.for_text(raw.text)
        return await self._from_evidence(evidence, classification, policy, gated=False)

    async def _import_recipe_url(
        self, raw: UrlInput, classification: InputClassification, policy: Optional[ParsePolicy]
    ) -> ImportResult:
        evidence = await self.acquirer.for_recipe_url(raw.url)

        for node in evidence.json_ld:
            recipe = recipe_from_json_ld(node)
            if recipe.is_empty():
                continue
            if not recipe.image_url:
                recipe.image_url = evidence.open_graph.get("image")
            logger.info("Using JSON-LD recipe from %s", raw.url)
            provenance = self._provenance(
                classification,
                evidence,
                extraction_method="json-ld",
                policy=ParsePolicy.VERBATIM,
                confidence=JSON_LD_CONFIDENCE,
            )
            return ImportResult(recipe=recipe, provenance=provenance)

        og = evidence.open_graph
        scrape_text = "\n".join(
            part for part in (og.get("title"), og.get("description"), evidence.page_text) if part
        )
        scraped = Evidence(
            text=scrape_text,
            page_text=evidence.page_text,
            methods=evidence.methods,
            source_url=evidence.source_url,
            open_graph=og,
        )
        result = await self._from_evidence(
            scraped, classification, policy, gated=False, extraction_method="scrape"
        )
        if not result.recipe.image_url and og.get("image"):
            result.recipe.image_url = og["image"]
        return result

    async def _import_image(
        self, raw: FileInput, classification: InputClassification, policy: Optional[ParsePolicy]
    ) -> ImportResult:
        recipe = await self.acquirer.image_recipe(raw)
        notes: List[str] = []
        confidence = VISION_CONFIDENCE
        if recipe.is_empty():
            notes.append(EMPTY_PARSE_NOTE)
            confidence = EMPTY_PARSE_CONFIDENCE
        provenance = self._provenance(
            classification,
            Evidence(text="", methods=["vision"]),
            extraction_method="vision",
            policy=ParsePolicy.CONSERVATIVE,
            confidence=confidence,
            notes=notes,
        )
        return ImportResult(recipe=recipe, provenance=provenance)

    async def _import_video_url(
        self, raw: UrlInput, classification: InputClassification, policy: Optional[ParsePolicy]
    ) -> ImportResult:
        evidence = await self.acquirer.for_video_url(raw.url)
        return await self._from_evidence(evidence, classification, policy, gated=True)

    async def _import_video_file(
        self, raw: FileInput, classification: InputClassification, policy: Optional[ParsePolicy]
    ) -> ImportResult:
        evidence = await self.acquirer.for_video_file(raw)
        return await self._from_evidence(evidence, classification, policy, gated=True)

    # ---- shared evidence path ----

    async def _from_evidence(
        self,
        evidence: Evidence,
        classification: InputClassification,
        requested_policy: Optional[ParsePolicy],
        *,
        gated: bool,
        extraction_method: Optional[str] = None,
    ) -> ImportResult:
        policy, notes = resolve_policy(requested_policy, self.knobs)
        source = SOURCE_BY_KIND[classification.kind]

        text = normalize(evidence.text)
        recipe = parse_recipe_with_rules(text)
        rates = compute_support_rates(text, recipe)

        if gated:
            self.gate.check(source, rates, evidence.sizes())

        confidence = evidence_confidence(recipe, rates)
        if self.reconciler is not None and should_reconcile(recipe, policy):
            outcome = await asyncio.to_thread(self.reconciler.reconcile, recipe, text, policy)
            recipe = outcome.recipe
            notes.extend(outcome.notes)
            if outcome.applied:
                confidence = outcome.confidence
            else:
                confidence = min(confidence, outcome.confidence)
            rates = compute_support_rates(text, recipe)

        if recipe.is_empty():
            notes.append(EMPTY_PARSE_NOTE)
            confidence = EMPTY_PARSE_CONFIDENCE

        provenance = self._provenance(
            classification,
            evidence,
            extraction_method=extraction_method or "+".join(evidence.methods) or "text",
            policy=policy,
            confidence=confidence,
            notes=notes,
            rates=rates,
        )
        return ImportResult(recipe=recipe, provenance=provenance)

    def _provenance(
        self,
        classification: InputClassification,
        evidence: Evidence,
        *,
        extraction_method: str,
        policy: ParsePolicy,
        confidence: float,
        notes: Optional[List[str]] = None,
        rates: Optional[SupportRates] = None,
    ) -> ImportProvenance:
        is_video = classification.kind in (InputKind.VIDEO_URL, InputKind.VIDEO_FILE)
        return ImportProvenance(
            source=SOURCE_BY_KIND[classification.kind],
            extraction_method=extraction_method,
            policy=policy,
            confidence=confidence,
            parser_notes=list(notes or []),
            support_rates=rates,
            evidence_sizes=evidence.sizes(),
            validation_warnings=list(classification.validation_warnings),
            hints=list(classification.hints),
            platform=classification.platform,
            detection_confidence=classification.confidence,
            video_url=evidence.source_url if is_video else None,
            caption=evidence.caption,
            transcript=evidence.transcript,
            ocr_text=evidence.ocr_text,
            page_text=evidence.page_text,
        )


# ---- module-level entry points ----

_default_importer: Optional[SmartImporter] = None
_default_telemetry: Optional[TelemetryRingBuffer] = None


def _telemetry() -> TelemetryRingBuffer:
    global _default_telemetry
    if _default_telemetry is None:
        _default_telemetry = TelemetryRingBuffer(get_import_knobs().telemetry_capacity)
    return _default_telemetry


def get_default_importer() -> SmartImporter:
    global _default_importer
    if _default_importer is None:
        _default_importer = SmartImporter.from_config(telemetry=_telemetry())
    return _default_importer


def reset_default_importer() -> None:
    global _default_importer, _default_telemetry
    _default_importer = None
    _default_telemetry = None


async def smart_import(
    raw: Union[RawImportInput, Mapping[str, Any]],
    *,
    policy: Optional[Union[ParsePolicy, str]] = None,
) -> ImportResult:
    return await get_default_importer().run(raw, policy=policy)


def get_recent_abstains() -> List[AbstainEvent]:
    """Most recent abstain events, newest first."""
    return list(_telemetry().snapshot())
