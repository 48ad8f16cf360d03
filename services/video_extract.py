"""Text signals from a local video: embedded captions, on-screen text and speech."""
import logging
import re
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from services.command_runner import CommandRunner
from services.errors import ExternalServiceError
from services.transcriber import Transcriber, local_path

logger = logging.getLogger(__name__)

CAPTION_CONFIDENCE = 0.3
FRAME_CONFIDENCE_STEP = 0.1
FRAME_CONFIDENCE_CAP = 0.4
AUDIO_CONFIDENCE = 0.4
MIN_FRAME_TEXT_CHARS = 3

_SRT_INDEX_RE = re.compile(r"^\d+$")
_SRT_TIMING_RE = re.compile(r"^\d{2}:\d{2}:\d{2}[,.]\d{3}\s*-->\s*\d{2}:\d{2}:\d{2}[,.]\d{3}")
_MARKUP_RE = re.compile(r"<[^>]+>|\{\\[^}]*\}")


@dataclass
class VideoExtractionOptions:
    extract_captions: bool = True
    extract_frame_text: bool = True
    transcribe_audio: bool = True
    frame_interval: int = 10
    max_frames: int = 8
    language: Optional[str] = None


@dataclass
class VideoExtraction:
    audio_transcript: str = ""
    captions: str = ""
    frame_texts: List[str] = field(default_factory=list)
    merged_content: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


def srt_to_text(srt: str) -> str:
    lines: List[str] = []
    for raw in (srt or "").splitlines():
        line = raw.strip()
        if not line or _SRT_INDEX_RE.match(line) or _SRT_TIMING_RE.match(line):
            continue
        cleaned = " ".join(_MARKUP_RE.sub("", line).split())
        if cleaned and (not lines or lines[-1] != cleaned):
            lines.append(cleaned)
    return "\n".join(lines)


def merge_video_content(captions: str, frame_texts: List[str], audio_transcript: str) -> str:
    sections: List[str] = []
    if captions.strip():
        sections.append("Video Captions:\n" + captions.strip())
    unique_frames = list(dict.fromkeys(text for text in frame_texts if text.strip()))
    if unique_frames:
        sections.append("On-screen Text:\n" + "\n".join(unique_frames))
    if audio_transcript.strip():
        sections.append("Audio Transcript:\n" + audio_transcript.strip())
    return "\n\n".join(sections)


class VideoContentExtractor:
    def __init__(
        self,
        *,
        runner: Optional[CommandRunner] = None,
        transcriber: Optional[Transcriber] = None,
        timeout_seconds: float = 300,
    ):
        self.runner = runner or CommandRunner()
        self.transcriber = transcriber
        self.timeout_seconds = timeout_seconds

    def _captions(self, path: Path) -> str:
        result = self.runner.run(
            ["ffmpeg", "-v", "error", "-i", str(path), "-map", "0:s:0", "-f", "srt", "pipe:1"],
            timeout=self.timeout_seconds,
        )
        return srt_to_text(result.stdout or "")

    def _frame_texts(self, path: Path, options: VideoExtractionOptions) -> List[str]:
        interval = max(int(options.frame_interval), 1)
        texts: List[str] = []
        with tempfile.TemporaryDirectory(prefix="smart-import-frames-") as tmp_dir:
            pattern = str(Path(tmp_dir) / "frame_%03d.png")
            self.runner.run(
                [
                    "ffmpeg",
                    "-v",
                    "error",
                    "-i",
                    str(path),
                    "-vf",
                    f"fps=1/{interval}",
                    "-frames:v",
                    str(max(int(options.max_frames), 1)),
                    pattern,
                ],
                timeout=self.timeout_seconds,
            )
            for frame in sorted(Path(tmp_dir).glob("frame_*.png")):
                try:
                    result = self.runner.run(
                        ["tesseract", str(frame), "stdout"],
                        timeout=self.timeout_seconds,
                    )
                except subprocess.CalledProcessError as exc:
                    logger.warning("OCR failed for %s: %s", frame.name, (exc.stderr or "").strip()[:200])
                    continue
                text = "\n".join(line.strip() for line in (result.stdout or "").splitlines() if line.strip())
                if len(text) >= MIN_FRAME_TEXT_CHARS:
                    texts.append(text)
        return texts

    def _audio(self, path: Path, options: VideoExtractionOptions) -> str:
        if self.transcriber is None:
            raise ExternalServiceError("transcription", "no transcriber configured")
        result = self.transcriber.transcribe(uri=str(path), mime="video/mp4", language=options.language)
        return str(result.get("text") or "").strip()

    def extract(self, uri: str, options: Optional[VideoExtractionOptions] = None) -> VideoExtraction:
        options = options or VideoExtractionOptions()
        path = local_path(uri)
        if not path.exists():
            raise ExternalServiceError("video", f"file not found: {path}")

        extraction = VideoExtraction()
        methods: List[str] = []
        confidence = 0.0

        if options.extract_captions:
            try:
                extraction.captions = self._captions(path)
            except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError, ValueError) as exc:
                logger.info("No caption stream extracted from %s: %s", path.name, exc)
            if extraction.captions:
                methods.append("captions")
                confidence += CAPTION_CONFIDENCE

        if options.extract_frame_text:
            try:
                extraction.frame_texts = self._frame_texts(path, options)
            except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError, ValueError) as exc:
                logger.warning("Frame OCR failed for %s: %s", path.name, exc)
            if extraction.frame_texts:
                methods.append("frame-ocr")
                confidence += min(FRAME_CONFIDENCE_CAP, len(extraction.frame_texts) * FRAME_CONFIDENCE_STEP)

        if options.transcribe_audio:
            try:
                extraction.audio_transcript = self._audio(path, options)
            except ExternalServiceError as exc:
                logger.warning("Audio transcription failed for %s: %s", path.name, exc)
            if extraction.audio_transcript:
                methods.append("audio-transcription")
                confidence += AUDIO_CONFIDENCE

        if not methods:
            raise ExternalServiceError("video", "no captions, on-screen text or speech could be extracted")

        extraction.merged_content = merge_video_content(
            extraction.captions, extraction.frame_texts, extraction.audio_transcript
        )
        extraction.metadata = {
            "extraction_methods": methods,
            "confidence": min(1.0, confidence),
            "frame_count": len(extraction.frame_texts),
        }
        return extraction
