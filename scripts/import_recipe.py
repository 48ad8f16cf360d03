#!/usr/bin/env python3
"""Import a recipe from a URL, pasted text or a local image/video file.

Usage:
    python scripts/import_recipe.py --url https://example.com/best-pancakes
    python scripts/import_recipe.py --text "$(cat recipe.txt)"
    python scripts/import_recipe.py --file clip.mp4 --mime video/mp4
    python scripts/import_recipe.py --url https://youtu.be/abc --abstains

Prints the recipe and its provenance as JSON. Exits 1 with a readable
message when the import fails or abstains.
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from services.errors import SmartImportError
from services.models import FileInput, TextInput, UrlInput
from services.smart_import import get_recent_abstains, smart_import
from smart_import.config import load_config
from smart_import.logging import configure_logging


def build_input(args: argparse.Namespace):
    if args.url:
        return UrlInput(url=args.url)
    if args.text is not None:
        return TextInput(text=args.text)
    path = Path(args.file).expanduser().resolve()
    size = path.stat().st_size if path.exists() else None
    return FileInput(uri=str(path), mime=args.mime, name=path.name, size=size)


def main() -> int:
    parser = argparse.ArgumentParser(description="Smart recipe import")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--url", type=str, help="Recipe page or video URL")
    source.add_argument("--text", type=str, help="Recipe text")
    source.add_argument("--file", type=str, metavar="PATH", help="Local image or video file")
    parser.add_argument("--mime", type=str, help="MIME type of --file (guessed from the extension otherwise)")
    parser.add_argument(
        "--policy",
        choices=["verbatim", "conservative", "enrich"],
        help="Parse policy (defaults to the configured one)",
    )
    parser.add_argument(
        "--abstains",
        action="store_true",
        help="Also print abstain events recorded by this run",
    )
    args = parser.parse_args()

    configure_logging(load_config())

    exit_code = 0
    try:
        result = asyncio.run(smart_import(build_input(args), policy=args.policy))
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    except SmartImportError as exc:
        print(exc.user_message(), file=sys.stderr)
        exit_code = 1

    if args.abstains:
        events = [event.to_dict() for event in get_recent_abstains()]
        print(json.dumps({"recent_abstains": events}, indent=2, ensure_ascii=False))

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
