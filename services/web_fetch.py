import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import requests

from services import metrics
from services.errors import ExternalServiceError
from smart_import.config import load_config

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
DEFAULT_READER_BASE = "https://r.jina.ai"
DEFAULT_TIMEOUT = 15

TRACKING_PARAMS = {
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_content",
    "utm_term",
    "fbclid",
    "gclid",
}
_MOBILE_HOST_PREFIXES = ("m.", "mobile.")


def ensure_scheme(raw_url: str) -> str:
    candidate = (raw_url or "").strip()
    if candidate and "://" not in candidate:
        candidate = f"https://{candidate}"
    return candidate


def strip_tracking_params(url: str) -> str:
    parsed = urlparse(url)
    if not parsed.query:
        return url
    kept = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k not in TRACKING_PARAMS]
    return urlunparse(parsed._replace(query=urlencode(kept)))


def canonicalize_video_url(raw_url: str) -> str:
    """Collapse youtu.be links, /shorts/ paths and mobile hosts onto the canonical watch URL."""
    url = strip_tracking_params(ensure_scheme(raw_url))
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    for prefix in _MOBILE_HOST_PREFIXES:
        if host.startswith(prefix):
            host = host[len(prefix):]
            break

    if host == "youtu.be" and len(parsed.path) > 1:
        video_id = parsed.path.strip("/").split("/")[0]
        return f"https://www.youtube.com/watch?v={video_id}"

    if host.endswith("youtube.com"):
        parts = [part for part in parsed.path.split("/") if part]
        if len(parts) >= 2 and parts[0] in ("shorts", "live", "embed"):
            return f"https://www.youtube.com/watch?v={parts[1]}"
        video_id = dict(parse_qsl(parsed.query)).get("v")
        if parsed.path.rstrip("/") == "/watch" and video_id:
            return f"https://www.youtube.com/watch?v={video_id}"

    if host != (parsed.hostname or "").lower():
        netloc = host if not parsed.port else f"{host}:{parsed.port}"
        return urlunparse(parsed._replace(netloc=netloc))
    return url


class PageFetcher:
    """HTTP access for the URL paths: direct page fetch, reader proxy and redirect resolution."""

    def __init__(
        self,
        *,
        reader_base_url: str = DEFAULT_READER_BASE,
        timeout_seconds: float = DEFAULT_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
        session: Optional[requests.Session] = None,
    ):
        self.reader_base_url = reader_base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "User-Agent": user_agent,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.9",
            }
        )

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "PageFetcher":
        cfg = config if config is not None else load_config()
        http_cfg = cfg.get("http", {})
        return cls(
            reader_base_url=str(cfg.get("reader_proxy", {}).get("base_url", DEFAULT_READER_BASE)),
            timeout_seconds=float(http_cfg.get("timeout", DEFAULT_TIMEOUT)),
            user_agent=str(http_cfg.get("user_agent", DEFAULT_USER_AGENT)),
        )

    def _get(self, service: str, url: str, **kwargs: Any) -> requests.Response:
        start_ts = time.time()
        success = False
        try:
            response = self._session.get(url, timeout=self.timeout_seconds, **kwargs)
            response.raise_for_status()
            success = True
            return response
        except requests.RequestException as exc:
            raise ExternalServiceError(service, f"GET {url} failed: {exc}") from exc
        finally:
            metrics.record_service_call(service, (time.time() - start_ts) * 1000, success)

    def fetch_html(self, url: str) -> str:
        response = self._get("page", url)
        content_type = response.headers.get("Content-Type", "")
        if content_type and "html" not in content_type.lower():
            raise ExternalServiceError("page", f"unexpected content type '{content_type}'")
        return response.text

    def fetch_reader_text(self, url: str) -> str:
        target = url if "://" in url else f"https://{url}"
        response = self._get("reader", f"{self.reader_base_url}/{target}", headers={"Accept": "text/plain"})
        return response.text.strip()

    def resolve(self, url: str) -> str:
        """Follow redirects and return the final URL."""
        start_ts = time.time()
        success = False
        try:
            response = self._session.head(url, allow_redirects=True, timeout=self.timeout_seconds)
            success = True
            return response.url or url
        except requests.RequestException as exc:
            raise ExternalServiceError("resolver", f"HEAD {url} failed: {exc}") from exc
        finally:
            metrics.record_service_call("resolver", (time.time() - start_ts) * 1000, success)
