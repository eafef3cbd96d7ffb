"""
Environment files - flat ``KEY=VALUE`` artifacts handed to downstream units.

Values are rendered the way ``jq -r`` prints them: strings raw, null as
``null``, booleans as ``true``/``false``, numbers as JSON numbers and
containers as compact JSON. Parsing goes through python-dotenv so the
files read back exactly as the consuming services would read them.
"""

from __future__ import annotations

import io
import json
import logging
import re
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from dotenv import dotenv_values

from .store import ArtifactStoreProtocol

logger = logging.getLogger("convoy.artifacts.envfile")

_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_NEEDS_QUOTES = re.compile(r"[\s\"'#\\$]")


def is_valid_key(key: str) -> bool:
    return bool(_KEY.match(key))


def render_value(value: Any) -> str:
    """Render an extracted value as environment file text."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return json.dumps(value)
    return json.dumps(value, separators=(",", ":"), sort_keys=False)


def _quote(value: str) -> str:
    if not value or not _NEEDS_QUOTES.search(value):
        return value
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )
    return f'"{escaped}"'


class EnvironmentRecord:
    """
    Ordered sequence of unique ``(key, value)`` string pairs.
    """

    __slots__ = ("_pairs", "_keys")

    def __init__(self, pairs: Optional[Iterable[Tuple[str, Any]]] = None) -> None:
        self._pairs: List[Tuple[str, str]] = []
        self._keys: Dict[str, int] = {}
        for key, value in pairs or ():
            self.add(key, value)

    def add(self, key: str, value: Any) -> None:
        """
        Append a pair. Non-string values are rendered with :func:`render_value`.

        Raises:
            ValueError: If the key is invalid or already present
        """
        if not is_valid_key(key):
            raise ValueError(f"Invalid environment key '{key}'")
        if key in self._keys:
            raise ValueError(f"Duplicate environment key '{key}'")
        self._keys[key] = len(self._pairs)
        self._pairs.append((key, render_value(value)))

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        idx = self._keys.get(key)
        return self._pairs[idx][1] if idx is not None else default

    def keys(self) -> List[str]:
        return [k for k, _ in self._pairs]

    def to_dict(self) -> Dict[str, str]:
        return dict(self._pairs)

    def render(self) -> str:
        """Serialize as ``KEY=VALUE\\n`` lines."""
        return "".join(f"{key}={_quote(value)}\n" for key, value in self._pairs)

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(self._pairs)

    def __len__(self) -> int:
        return len(self._pairs)

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EnvironmentRecord):
            return NotImplemented
        return self._pairs == other._pairs

    def __repr__(self) -> str:
        return f"EnvironmentRecord({self._pairs!r})"


class EnvironmentFileWriter:
    """
    Writes an :class:`EnvironmentRecord` over an artifact path.

    The destination is always replaced as a whole; keys from a previous
    run never survive.
    """

    __slots__ = ("_store",)

    def __init__(self, store: ArtifactStoreProtocol) -> None:
        self._store = store

    def write(self, path: str, record: EnvironmentRecord) -> None:
        """
        Raises:
            ArtifactWriteFault: If the store cannot be written
        """
        self._store.write_text(path, record.render())
        logger.info(
            "Environment file %s written (%d keys)", self._store.locate(path), len(record)
        )


def parse_env_text(text: str) -> Dict[str, str]:
    """Parse environment file text with python-dotenv (no interpolation)."""
    values = dotenv_values(stream=io.StringIO(text), interpolate=False)
    return {key: ("" if value is None else value) for key, value in values.items()}


def read_env_file(store: ArtifactStoreProtocol, path: str) -> Optional[Dict[str, str]]:
    """Read an environment artifact; None if it does not exist."""
    text = store.read_text(path)
    if text is None:
        return None
    return parse_env_text(text)
