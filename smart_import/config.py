from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = BASE_DIR / "config.yaml"

KNOBS_VERSION = "2025-08-14"
VALID_POLICIES = ("verbatim", "conservative", "enrich")


@dataclass(frozen=True)
class ImportKnobs:
    version: str = KNOBS_VERSION
    policy: str = "conservative"
    allow_enrich: bool = False
    min_ingredient_support: float = 0.7
    min_step_support: float = 0.7
    telemetry_capacity: int = 20


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _unit_interval(raw: str) -> Optional[float]:
    try:
        value = float(raw)
    except ValueError:
        return None
    if 0.0 <= value <= 1.0:
        return value
    return None


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}

    policy = os.getenv("SMART_IMPORT_POLICY", "").strip().lower()
    if policy in VALID_POLICIES:
        overrides.setdefault("import", {})["policy"] = policy

    allow_enrich = os.getenv("SMART_IMPORT_ALLOW_ENRICH", "").strip().lower()
    if allow_enrich:
        overrides.setdefault("import", {})["allow_enrich"] = allow_enrich in {"1", "true", "yes", "on"}

    for env_name, key in (
        ("SMART_IMPORT_MIN_ING_SUPPORT", "min_ingredient_support"),
        ("SMART_IMPORT_MIN_STEP_SUPPORT", "min_step_support"),
    ):
        raw = os.getenv(env_name, "").strip()
        if not raw:
            continue
        value = _unit_interval(raw)
        if value is not None:
            overrides.setdefault("import", {})[key] = value

    ollama_url = os.getenv("OLLAMA_URL")
    if ollama_url:
        overrides.setdefault("ollama", {})["base_url"] = ollama_url

    stt_base = os.getenv("STT_API_BASE")
    if stt_base:
        overrides.setdefault("transcription", {})["base_url"] = stt_base

    stt_key = os.getenv("STT_API_KEY")
    if stt_key:
        overrides.setdefault("transcription", {})["api_key"] = stt_key

    reader_base = os.getenv("READER_PROXY_BASE")
    if reader_base:
        overrides.setdefault("reader_proxy", {})["base_url"] = reader_base

    return overrides


def resolve_path(path_value: str, *, base_dir: Optional[Path] = None) -> Path:
    candidate = Path(path_value)
    if not candidate.is_absolute():
        candidate = (base_dir or BASE_DIR) / candidate
    return candidate.resolve()


@lru_cache(maxsize=1)
def load_config() -> Dict[str, Any]:
    # Load .env once through a single interface.
    load_dotenv(dotenv_path=BASE_DIR / ".env")

    config_path = os.getenv("SMART_IMPORT_CONFIG")
    path = resolve_path(config_path, base_dir=Path.cwd()) if config_path else DEFAULT_CONFIG_PATH

    data: Dict[str, Any] = {}
    if path.exists():
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        if isinstance(loaded, dict):
            data = loaded

    return _deep_merge(data, _env_overrides())


def reload_config() -> Dict[str, Any]:
    load_config.cache_clear()
    return load_config()


def get_import_knobs(config: Optional[Dict[str, Any]] = None) -> ImportKnobs:
    cfg = config if config is not None else load_config()
    section = cfg.get("import", {}) if isinstance(cfg.get("import"), dict) else {}
    defaults = ImportKnobs()

    policy = str(section.get("policy", defaults.policy)).strip().lower()
    if policy not in VALID_POLICIES:
        policy = defaults.policy

    def _threshold(key: str, default: float) -> float:
        raw = section.get(key, default)
        try:
            value = float(raw)
        except (TypeError, ValueError):
            return default
        return min(max(value, 0.0), 1.0)

    try:
        capacity = max(int(section.get("telemetry_capacity", defaults.telemetry_capacity)), 1)
    except (TypeError, ValueError):
        capacity = defaults.telemetry_capacity

    return ImportKnobs(
        version=str(section.get("version", KNOBS_VERSION)),
        policy=policy,
        allow_enrich=bool(section.get("allow_enrich", defaults.allow_enrich)),
        min_ingredient_support=_threshold("min_ingredient_support", defaults.min_ingredient_support),
        min_step_support=_threshold("min_step_support", defaults.min_step_support),
        telemetry_capacity=capacity,
    )


def get_log_path(config: Optional[Dict[str, Any]] = None) -> Path:
    cfg = config or load_config()
    log_path = str(cfg.get("paths", {}).get("log_file", "logs/smart-import.log"))
    return resolve_path(log_path)
