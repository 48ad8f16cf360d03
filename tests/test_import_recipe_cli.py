import importlib.util
import json
from pathlib import Path

from services.errors import ImportFailedError
from services.models import CanonicalRecipe, ImportProvenance, ImportResult, ParsePolicy

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "import_recipe.py"


def _load_cli():
    spec = importlib.util.spec_from_file_location("import_recipe_cli", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_cli_prints_result_json(monkeypatch, capsys):
    cli = _load_cli()
    seen = {}

    async def fake_import(raw, *, policy=None):
        seen["raw"], seen["policy"] = raw, policy
        return ImportResult(
            recipe=CanonicalRecipe(name="Toast"),
            provenance=ImportProvenance(source="text", extraction_method="text", policy=ParsePolicy.VERBATIM),
        )

    monkeypatch.setattr(cli, "smart_import", fake_import)
    monkeypatch.setattr(cli, "configure_logging", lambda config: None)
    monkeypatch.setattr("sys.argv", ["import_recipe.py", "--text", "Toast", "--policy", "verbatim"])

    assert cli.main() == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["recipe"]["name"] == "Toast"
    assert seen["raw"].text == "Toast"
    assert seen["policy"] == "verbatim"


def test_cli_reports_failures(monkeypatch, capsys):
    cli = _load_cli()

    async def failing_import(raw, *, policy=None):
        raise ImportFailedError("Could not load the recipe page")

    monkeypatch.setattr(cli, "smart_import", failing_import)
    monkeypatch.setattr(cli, "configure_logging", lambda config: None)
    monkeypatch.setattr("sys.argv", ["import_recipe.py", "--url", "https://e.x/pie"])

    assert cli.main() == 1
    err = capsys.readouterr().err
    assert "Could not load the recipe page" in err
    assert "Paste the recipe text directly" in err


def test_cli_file_input_carries_size(tmp_path):
    cli = _load_cli()
    clip = tmp_path / "clip.mp4"
    clip.write_bytes(b"\x00" * 10)
    namespace = cli.argparse.Namespace(url=None, text=None, file=str(clip), mime="video/mp4")
    file_input = cli.build_input(namespace)

    assert file_input.size == 10
    assert file_input.name == "clip.mp4"
    assert file_input.mime == "video/mp4"
