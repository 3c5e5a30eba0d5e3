"""Validate the transition tables and the locale files they depend on."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Sequence, Type

import yaml

from ..engine import SHARED_STRING_KEYS, NarrativeEngine
from ..narratives import AdvancedUserNarrative, NewUserNarrative
from ..strings import StringLibrary
from ..tracks import TrackDefinitionError

LOCALE_DIR = Path(__file__).resolve().parent.parent / "data" / "locales"
DEFAULT_FILES = sorted(LOCALE_DIR.glob("*.yaml"))
ENGINES: Sequence[Type[NarrativeEngine]] = (NewUserNarrative, AdvancedUserNarrative)


def validate_tracks(engines: Sequence[Type[NarrativeEngine]] = ENGINES) -> List[str]:
    errors: List[str] = []
    for engine in engines:
        try:
            engine.track.validate(engine)
        except TrackDefinitionError as exc:
            errors.append(str(exc))
    return errors


def required_keys(engines: Sequence[Type[NarrativeEngine]] = ENGINES) -> List[str]:
    keys = set(SHARED_STRING_KEYS)
    for engine in engines:
        prefix = engine.track.i18n_prefix
        keys.update(f"{prefix}.{key}" for key in engine.track.instruction_keys())
        keys.update(f"{prefix}.{key}" for key in engine.string_keys)
    return sorted(keys)


def validate_locale(path: Path, engines: Sequence[Type[NarrativeEngine]] = ENGINES) -> List[str]:
    try:
        strings = StringLibrary(locale=path.stem, path=path)
    except (OSError, yaml.YAMLError) as exc:
        return [f"{path}: failed to load: {exc}"]

    errors = [
        f"{path}: missing string '{key}'" for key in required_keys(engines) if not strings.has(key)
    ]
    if strings.has("quotes"):
        for idx, entry in enumerate(strings.variants("quotes")):
            if "|" not in entry:
                errors.append(f"{path}: quotes[{idx}] must be formatted as 'text|author'")
    return errors


def validate_files(paths: Sequence[Path]) -> List[str]:
    errors = validate_tracks()
    for path in paths:
        if not path.exists():
            errors.append(f"{path}: file not found")
            continue
        errors.extend(validate_locale(path))
    return errors


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Validate narrative transition tables and locale files."
    )
    parser.add_argument(
        "paths",
        nargs="*",
        type=Path,
        help="Locale YAML files to check (defaults to every bundled locale)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    targets: List[Path] = list(args.paths) if args.paths else list(DEFAULT_FILES)

    errors = validate_files(targets)
    if errors:
        for message in errors:
            print(message, file=sys.stderr)
        return 1

    print("Track validation passed for", len(targets), "locale file(s).")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
