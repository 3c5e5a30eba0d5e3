"""Localized string lookup for bot replies."""

from __future__ import annotations

import random
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

_RANDOM = random.Random()  # nosec B311 - pseudo-RNG acceptable for picking reply variants

_LOCALE_DIR = Path(__file__).parent / "data" / "locales"

StringValue = Union[str, List[str]]


class MissingTranslationError(KeyError):
    """Raised when a string key is absent from the loaded locale."""


class StringLibrary:
    """Loads a locale file and resolves dotted keys to formatted strings."""

    def __init__(self, locale: str = "en", path: Path | None = None) -> None:
        self._locale = locale
        self._path = path or _LOCALE_DIR / f"{locale}.yaml"
        self._strings: Dict[str, StringValue] = {}
        self._load()

    @property
    def locale(self) -> str:
        return self._locale

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        with self._path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
        self._strings = {}
        self._flatten(raw, "")

    def _flatten(self, node: Any, prefix: str) -> None:
        if isinstance(node, dict):
            for key, value in node.items():
                child = f"{prefix}.{key}" if prefix else str(key)
                self._flatten(value, child)
        elif isinstance(node, list):
            self._strings[prefix] = [str(item) for item in node if item is not None]
        elif node is not None:
            self._strings[prefix] = str(node)

    def has(self, key: str) -> bool:
        return key in self._strings

    def keys(self) -> List[str]:
        return sorted(self._strings)

    def _lookup(self, key: str) -> StringValue:
        try:
            return self._strings[key]
        except KeyError:
            raise MissingTranslationError(f"translation missing: {self._locale}.{key}") from None

    def translate(self, key: str, **named_args: Any) -> str:
        """Return the string stored under ``key`` with placeholders filled in."""

        value = self._lookup(key)
        if isinstance(value, list):
            raise MissingTranslationError(
                f"{self._locale}.{key} holds variants; use variants() or choose()"
            )
        return value.format(**named_args).strip()

    def variants(self, key: str, **named_args: Any) -> List[str]:
        value = self._lookup(key)
        items = value if isinstance(value, list) else [value]
        return [item.format(**named_args).strip() for item in items]

    def choose(self, key: str, rng: Optional[random.Random] = None, **named_args: Any) -> str:
        """Pick one variant of ``key`` at random."""

        return (rng or _RANDOM).choice(self.variants(key, **named_args))


__all__ = ["MissingTranslationError", "StringLibrary"]
