import logging
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import requests

from services import metrics
from services.command_runner import CommandRunner
from services.errors import ExternalServiceError
from smart_import.config import load_config, resolve_path

logger = logging.getLogger(__name__)

MODEL_PATH = Path("models/ggml-medium.bin")
DEFAULT_LANGUAGE = "en"
DEFAULT_TIMEOUT = 300


class Transcriber(Protocol):
    def transcribe(
        self,
        *,
        uri: Optional[str] = None,
        url: Optional[str] = None,
        mime: Optional[str] = None,
        language: Optional[str] = None,
    ) -> Dict[str, str]:
        ...


def local_path(uri: str) -> Path:
    return Path(uri[len("file://"):] if uri.startswith("file://") else uri)


class HttpTranscriber:
    """OpenAI-compatible ``/audio/transcriptions`` endpoint: file upload or remote URL."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        model: str = "whisper-1",
        language: str = DEFAULT_LANGUAGE,
        timeout_seconds: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.language = language
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    def transcribe(
        self,
        *,
        uri: Optional[str] = None,
        url: Optional[str] = None,
        mime: Optional[str] = None,
        language: Optional[str] = None,
    ) -> Dict[str, str]:
        if not uri and not url:
            raise ExternalServiceError("transcription", "either uri or url is required")

        data = {
            "model": self.model,
            "language": language or self.language,
            "response_format": "json",
        }
        endpoint = f"{self.base_url}/audio/transcriptions"
        start_ts = time.time()
        success = False
        try:
            if uri:
                path = local_path(uri)
                with path.open("rb") as handle:
                    response = self._session.post(
                        endpoint,
                        headers=self._headers(),
                        data=data,
                        files={"file": (path.name, handle, mime or "application/octet-stream")},
                        timeout=self.timeout_seconds,
                    )
            else:
                response = self._session.post(
                    endpoint,
                    headers=self._headers(),
                    data={**data, "url": url},
                    timeout=self.timeout_seconds,
                )
            response.raise_for_status()
            text = str(response.json().get("text") or "").strip()
            success = True
            return {"text": text}
        except OSError as exc:
            raise ExternalServiceError("transcription", f"cannot read {uri}: {exc}") from exc
        except (requests.RequestException, ValueError) as exc:
            raise ExternalServiceError("transcription", str(exc)) from exc
        finally:
            metrics.record_service_call("transcription", (time.time() - start_ts) * 1000, success)


class WhisperCliTranscriber:
    """Local whisper.cpp: ffmpeg to 16 kHz mono wav, then whisper-cli prints the transcript."""

    def __init__(
        self,
        model_path: Path = MODEL_PATH,
        *,
        language: str = DEFAULT_LANGUAGE,
        runner: Optional[CommandRunner] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT,
    ):
        self.model_path = model_path
        self.language = language
        self.runner = runner or CommandRunner()
        self.timeout_seconds = timeout_seconds

    def transcribe(
        self,
        *,
        uri: Optional[str] = None,
        url: Optional[str] = None,
        mime: Optional[str] = None,
        language: Optional[str] = None,
    ) -> Dict[str, str]:
        if not uri:
            raise ExternalServiceError("whisper-cli", "only local files can be transcribed")
        if not self.model_path.exists():
            raise ExternalServiceError(
                "whisper-cli", f"Whisper model not found: {self.model_path} (download it into ./models/)"
            )

        source = local_path(uri)
        logger.info("Transcribing file: %s", source)
        with tempfile.TemporaryDirectory(prefix="smart-import-audio-") as tmp_dir:
            wav_path = Path(tmp_dir) / "audio.wav"
            try:
                self.runner.run(
                    ["ffmpeg", "-y", "-i", str(source), "-vn", "-ar", "16000", "-ac", "1", str(wav_path)],
                    timeout=self.timeout_seconds,
                )
                result = self.runner.run(
                    [
                        "whisper-cli",
                        "-m",
                        str(self.model_path),
                        "-f",
                        str(wav_path),
                        "-l",
                        language or self.language,
                        "-nt",
                    ],
                    timeout=self.timeout_seconds,
                )
            except subprocess.CalledProcessError as exc:
                logger.error("Whisper transcription failed: %s", (exc.stderr or "").strip()[:300])
                raise ExternalServiceError("whisper-cli", f"exit status {exc.returncode}") from exc
            except (OSError, ValueError, subprocess.TimeoutExpired) as exc:
                raise ExternalServiceError("whisper-cli", str(exc)) from exc

        text = " ".join((result.stdout or "").split())
        logger.info("Transcription result: %s...", text[:50])
        return {"text": text}


def build_transcriber(
    config: Optional[Dict[str, Any]] = None, *, runner: Optional[CommandRunner] = None
) -> Optional[Transcriber]:
    cfg = (config if config is not None else load_config()).get("transcription", {})
    backend = str(cfg.get("backend", "http")).strip().lower()
    language = str(cfg.get("language", DEFAULT_LANGUAGE))
    timeout = float(cfg.get("timeout", DEFAULT_TIMEOUT))

    if backend == "whisper-cli":
        return WhisperCliTranscriber(
            resolve_path(str(cfg.get("model_path", MODEL_PATH))),
            language=language,
            runner=runner,
            timeout_seconds=timeout,
        )

    base_url = cfg.get("base_url")
    if not base_url:
        logger.info("No transcription endpoint configured; audio transcription disabled")
        return None
    return HttpTranscriber(
        str(base_url),
        api_key=cfg.get("api_key"),
        model=str(cfg.get("model", "whisper-1")),
        language=language,
        timeout_seconds=timeout,
    )
