import asyncio
import json

import pytest

from services.errors import ExternalServiceError, ImportFailedError
from services.evidence import EvidenceAcquirer, Strategy, first_success, merge_signals
from services.models import CanonicalRecipe, FileInput
from services.video_extract import VideoExtraction

RECIPE_TEXT = (
    "Garlic Noodles\nIngredients\n2 tbsp butter\n4 cloves garlic\n"
    "Steps\nMelt the butter.\nAdd the garlic and toss the noodles."
)


def _run(coro):
    return asyncio.run(coro)


class FakeFetcher:
    def __init__(self, html=None, reader=None, resolved=None):
        self.html = html
        self.reader = reader
        self.resolved = resolved
        self.reader_calls = []

    def fetch_html(self, url):
        if self.html is None:
            raise ExternalServiceError("page", "403 Forbidden")
        return self.html

    def fetch_reader_text(self, url):
        self.reader_calls.append(url)
        if self.reader is None:
            raise ExternalServiceError("reader", "timeout")
        return self.reader

    def resolve(self, url):
        if self.resolved is None:
            raise ExternalServiceError("resolver", "HEAD failed")
        return self.resolved


class FakeTranscriber:
    def __init__(self, text=""):
        self.text = text
        self.calls = []

    def transcribe(self, *, uri=None, url=None, mime=None, language=None):
        self.calls.append({"uri": uri, "url": url})
        return {"text": self.text}


class FakeExtractor:
    def __init__(self, extraction=None):
        self.extraction = extraction

    def extract(self, uri, options=None):
        if self.extraction is None:
            raise ExternalServiceError("video", "no captions, on-screen text or speech could be extracted")
        return self.extraction


def test_merge_signals_dedupes_lines_case_insensitively():
    merged = merge_signals(["Add 2 tbsp butter\nadd 2 tbsp BUTTER", None, "  \nToss ½ cup noodles"])
    assert merged == "Add 2 tbsp butter\nToss 1/2 cup noodles"


def test_first_success_tries_in_order():
    order = []

    async def failing():
        order.append("failing")
        raise ExternalServiceError("page", "down")

    async def short():
        order.append("short")
        return "tiny"

    async def good():
        order.append("good")
        return "x" * 60

    name, value = _run(
        first_success([Strategy("a", failing), Strategy("b", short, 50), Strategy("c", good, 50)])
    )
    assert (name, len(value)) == ("c", 60)
    assert order == ["failing", "short", "good"]


def test_first_success_raises_import_failed_with_cause():
    async def failing():
        raise ExternalServiceError("page", "down")

    with pytest.raises(ImportFailedError) as exc_info:
        _run(first_success([Strategy("a", failing)], failure_message="Could not load the recipe page"))

    assert str(exc_info.value) == "Could not load the recipe page"
    assert isinstance(exc_info.value.__cause__, ExternalServiceError)
    assert exc_info.value.suggestions


def test_recipe_url_prefers_direct_html():
    node = {"@type": "Recipe", "name": "Noodles", "recipeIngredient": ["2 tbsp butter"]}
    html = (
        f'<html><head><script type="application/ld+json">{json.dumps(node)}</script>'
        '<meta property="og:title" content="Noodles"></head>'
        "<body><article>Garlic noodles with butter, ready in ten minutes.</article></body></html>"
    )
    evidence = _run(EvidenceAcquirer(fetcher=FakeFetcher(html=html)).for_recipe_url("https://e.x/n"))

    assert evidence.methods == ["direct-fetch"]
    assert evidence.json_ld == [node]
    assert evidence.open_graph["title"] == "Noodles"
    assert evidence.page_text.startswith("Garlic noodles")


def test_recipe_url_falls_back_to_reader_proxy():
    fetcher = FakeFetcher(html=None, reader=RECIPE_TEXT)
    evidence = _run(EvidenceAcquirer(fetcher=fetcher).for_recipe_url("https://e.x/n"))

    assert evidence.methods == ["reader-proxy"]
    assert evidence.page_text == RECIPE_TEXT
    assert evidence.json_ld == []


def test_recipe_url_short_html_counts_as_failure():
    fetcher = FakeFetcher(html="<html></html>", reader=None)
    with pytest.raises(ImportFailedError):
        _run(EvidenceAcquirer(fetcher=fetcher).for_recipe_url("https://e.x/n"))


def test_video_url_keeps_canonical_url_when_resolution_fails():
    fetcher = FakeFetcher(reader="too short")
    transcriber = FakeTranscriber(text=RECIPE_TEXT)
    acquirer = EvidenceAcquirer(fetcher=fetcher, transcriber=transcriber)

    evidence = _run(acquirer.for_video_url("https://youtu.be/abc123"))

    canonical = "https://www.youtube.com/watch?v=abc123"
    assert fetcher.reader_calls == [canonical]
    assert transcriber.calls == [{"uri": None, "url": canonical}]
    assert evidence.methods == ["audio-transcription"]
    assert evidence.transcript == RECIPE_TEXT
    assert evidence.source_url == canonical


def test_video_url_uses_resolved_url():
    fetcher = FakeFetcher(reader=RECIPE_TEXT, resolved="https://www.tiktok.com/@chef/video/7")
    evidence = _run(EvidenceAcquirer(fetcher=fetcher).for_video_url("https://vm.tiktok.com/abc"))

    assert evidence.source_url == "https://www.tiktok.com/@chef/video/7"
    assert evidence.methods == ["reader-proxy"]


def test_video_file_merges_signals_from_combined_extraction():
    extraction = VideoExtraction(
        audio_transcript="Melt the butter.",
        captions="Garlic Noodles\nMelt the butter.",
        frame_texts=["2 tbsp butter"],
        merged_content="Video Captions:\nGarlic Noodles\nMelt the butter.\n\nOn-screen Text:\n2 tbsp butter",
        metadata={"extraction_methods": ["captions", "frame-ocr", "audio-transcription"], "confidence": 0.8},
    )
    acquirer = EvidenceAcquirer(video_extractor=FakeExtractor(extraction))
    evidence = _run(acquirer.for_video_file(FileInput(uri="/tmp/clip.mp4", mime="video/mp4")))

    assert evidence.text == "Garlic Noodles\nMelt the butter.\n2 tbsp butter"
    assert evidence.ocr_text == "2 tbsp butter"
    assert evidence.methods == ["captions", "frame-ocr", "audio-transcription"]
    assert evidence.confidence == 0.8


def test_video_file_falls_back_to_audio_only():
    transcriber = FakeTranscriber(text=RECIPE_TEXT)
    acquirer = EvidenceAcquirer(video_extractor=FakeExtractor(None), transcriber=transcriber)
    evidence = _run(acquirer.for_video_file(FileInput(uri="/tmp/clip.mp4", mime="video/mp4")))

    assert evidence.methods == ["audio-transcription"]
    assert transcriber.calls == [{"uri": "/tmp/clip.mp4", "url": None}]


def test_video_file_all_strategies_fail():
    acquirer = EvidenceAcquirer(video_extractor=FakeExtractor(None), transcriber=FakeTranscriber(text=""))
    with pytest.raises(ImportFailedError) as exc_info:
        _run(acquirer.for_video_file(FileInput(uri="/tmp/clip.mp4")))
    assert "Paste the recipe text directly" in exc_info.value.user_message()


def test_image_recipe_sends_data_url(tmp_path):
    image = tmp_path / "card.png"
    image.write_bytes(b"\x89PNG data")

    class FakeImporter:
        def __init__(self):
            self.data_urls = []

        def import_from_image(self, data_url):
            self.data_urls.append(data_url)
            return CanonicalRecipe(name="Card")

    importer = FakeImporter()
    recipe = _run(EvidenceAcquirer(image_importer=importer).image_recipe(FileInput(uri=str(image), mime="image/png")))

    assert recipe.name == "Card"
    assert importer.data_urls[0].startswith("data:image/png;base64,")


def test_image_recipe_unreadable_file(tmp_path):
    class FakeImporter:
        def import_from_image(self, data_url):
            raise AssertionError("should not be called")

    acquirer = EvidenceAcquirer(image_importer=FakeImporter())
    with pytest.raises(ImportFailedError):
        _run(acquirer.image_recipe(FileInput(uri=str(tmp_path / "missing.png"))))
