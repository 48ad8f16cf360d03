import logging
import time
from typing import Any, Dict, Optional, Sequence

import requests

from services import metrics
from services.errors import ExternalServiceError
from smart_import.config import load_config
from smart_import.logging import get_correlation_id

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_MODEL = "llama3.1:8b"
DEFAULT_TIMEOUT = 180


class OllamaClient:
    """Chat completions against an Ollama server (``POST /api/chat``, non-streaming)."""

    def __init__(
        self,
        base_url: str = DEFAULT_OLLAMA_URL,
        model: str = DEFAULT_MODEL,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None, *, vision: bool = False) -> "OllamaClient":
        cfg = (config if config is not None else load_config()).get("ollama", {})
        model = cfg.get("model", DEFAULT_MODEL)
        if vision:
            model = cfg.get("vision_model", model)
        return cls(
            base_url=str(cfg.get("base_url", DEFAULT_OLLAMA_URL)),
            model=str(model),
            timeout=float(cfg.get("timeout", DEFAULT_TIMEOUT)),
        )

    def complete(
        self,
        messages: Sequence[Dict[str, str]],
        *,
        temperature: Optional[float] = None,
        images: Optional[Sequence[str]] = None,
    ) -> str:
        payload_messages = [dict(message) for message in messages]
        if images and payload_messages:
            # Ollama takes raw base64 images on the message that refers to them.
            payload_messages[-1]["images"] = list(images)

        payload: Dict[str, Any] = {
            "model": self.model,
            "stream": False,
            "messages": payload_messages,
        }
        if temperature is not None:
            payload["options"] = {"temperature": temperature}

        logger.debug("[%s] Calling Ollama model=%s", get_correlation_id(), self.model)
        start_ts = time.time()
        success = False
        try:
            response = self.session.post(
                f"{self.base_url}/api/chat", json=payload, timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
            content = str((data.get("message") or {}).get("content", "")).strip()
            if not content:
                raise ExternalServiceError("ollama", "empty completion")
            success = True
            return content
        except (requests.RequestException, ValueError) as exc:
            raise ExternalServiceError("ollama", str(exc)) from exc
        finally:
            metrics.record_llm_call(
                model=self.model, duration_ms=(time.time() - start_ts) * 1000, success=success
            )
