import logging

import pytest

from smart_import import config as si_config
from smart_import.logging import (
    PlainFormatter,
    StructuredFormatter,
    configure_logging,
    correlation_context,
    get_correlation_id,
)

ENV_KEYS = (
    "SMART_IMPORT_POLICY",
    "SMART_IMPORT_ALLOW_ENRICH",
    "SMART_IMPORT_MIN_ING_SUPPORT",
    "SMART_IMPORT_MIN_STEP_SUPPORT",
    "OLLAMA_URL",
    "STT_API_BASE",
)


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    cfg_path = tmp_path / "config.yaml"
    monkeypatch.setenv("SMART_IMPORT_CONFIG", str(cfg_path))
    yield cfg_path
    monkeypatch.undo()
    si_config.reload_config()


def test_knob_defaults_when_section_missing(config_file):
    config_file.write_text("logging:\n  level: DEBUG\n", encoding="utf-8")
    knobs = si_config.get_import_knobs(si_config.reload_config())

    assert knobs.policy == "conservative"
    assert knobs.allow_enrich is False
    assert knobs.min_ingredient_support == 0.7
    assert knobs.min_step_support == 0.7
    assert knobs.telemetry_capacity == 20
    assert knobs.version == si_config.KNOBS_VERSION


def test_yaml_values_and_clamping(config_file):
    config_file.write_text(
        "import:\n  policy: enrich\n  allow_enrich: true\n  min_ingredient_support: 1.5\n  telemetry_capacity: 5\n",
        encoding="utf-8",
    )
    knobs = si_config.get_import_knobs(si_config.reload_config())

    assert knobs.policy == "enrich"
    assert knobs.allow_enrich is True
    assert knobs.min_ingredient_support == 1.0
    assert knobs.telemetry_capacity == 5


def test_env_overrides_win(config_file, monkeypatch):
    config_file.write_text("import:\n  policy: verbatim\n  min_step_support: 0.4\n", encoding="utf-8")
    monkeypatch.setenv("SMART_IMPORT_POLICY", "conservative")
    monkeypatch.setenv("SMART_IMPORT_MIN_STEP_SUPPORT", "0.9")
    monkeypatch.setenv("SMART_IMPORT_MIN_ING_SUPPORT", "7")  # outside [0,1], ignored
    monkeypatch.setenv("OLLAMA_URL", "http://gpu-box:11434")

    cfg = si_config.reload_config()
    knobs = si_config.get_import_knobs(cfg)

    assert knobs.policy == "conservative"
    assert knobs.min_step_support == 0.9
    assert knobs.min_ingredient_support == 0.7
    assert cfg["ollama"]["base_url"] == "http://gpu-box:11434"


def test_unknown_policy_falls_back(config_file):
    assert si_config.get_import_knobs({"import": {"policy": "creative"}}).policy == "conservative"


def test_log_path_is_absolute(config_file):
    config_file.write_text("paths:\n  log_file: logs/custom.log\n", encoding="utf-8")
    log_path = si_config.get_log_path(si_config.reload_config())
    assert log_path.is_absolute()
    assert str(log_path).endswith("logs/custom.log")


def test_correlation_context_restores_previous_id():
    with correlation_context("outer-id"):
        with correlation_context() as inner:
            assert get_correlation_id() == inner
        assert get_correlation_id() == "outer-id"


def test_structured_formatter_includes_extra_data():
    record = logging.LogRecord("services.abstain", logging.WARNING, __file__, 1, "Import abstained", (), None)
    record.correlation_id = "abc123"
    record.extra_data = {"source": "video"}

    output = StructuredFormatter().format(record)
    assert '"correlation_id": "abc123"' in output
    assert '"source": "video"' in output


def test_plain_formatter_appends_fields():
    record = logging.LogRecord("services.smart_import", logging.INFO, __file__, 1, "Recipe imported", (), None)
    record.extra_data = {"kind": "text", "steps": 2}

    line = PlainFormatter().format(record)
    assert "[-]" in line
    assert line.endswith("Recipe imported | kind=text steps=2")


def test_configure_logging_replaces_its_own_handlers():
    root = logging.getLogger()
    previous_level = root.level
    config = {"logging": {"level": "DEBUG", "file_enabled": False}}
    try:
        configure_logging(config)
        configure_logging(config)
        ours = [handler for handler in root.handlers if getattr(handler, "_smart_import_handler", False)]
        assert len(ours) == 1
        assert root.level == logging.DEBUG
    finally:
        for handler in list(root.handlers):
            if getattr(handler, "_smart_import_handler", False):
                root.removeHandler(handler)
        root.setLevel(previous_level)
