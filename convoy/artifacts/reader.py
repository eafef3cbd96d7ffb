"""
Structured Artifact Reader - extract fields from JSON artifacts.

Reads never raise for the expected failure modes:

- the artifact does not exist yet (``ArtifactNotFoundFault``)
- the artifact is not valid JSON (``ArtifactParseFault``)
- the store cannot read it (``ArtifactReadFault``)

All are returned on the :class:`ReadResult` with a null value, and the
caller decides whether that is fatal. Navigating through a missing key
yields null without any fault, like ``jq -r`` printing ``null``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from ..faults import ArtifactFault, ArtifactNotFoundFault, ArtifactParseFault, ArtifactReadFault
from .store import ArtifactStoreProtocol

logger = logging.getLogger("convoy.artifacts.reader")

Step = Union[str, int]

_MISSING = object()
_BRACKET = re.compile(r"\[(-?\d+|\"[^\"]*\")\]")


def parse_field_path(field_path: Optional[str]) -> Tuple[Step, ...]:
    """
    Split a field path into navigation steps.

    Accepts ``kakarot.address``, jq style ``.kakarot.address``, numeric
    steps (``items.0.name``) and bracket steps (``items[0]``,
    ``["odd.key"]``). An empty path or ``.`` selects the whole document.
    """
    if field_path is None:
        return ()
    text = field_path.strip()
    if text in ("", "."):
        return ()

    steps: List[Step] = []
    pos = 0
    if text.startswith("."):
        pos = 1
    while pos < len(text):
        if text[pos] == "[":
            match = _BRACKET.match(text, pos)
            if not match:
                raise ValueError(f"Malformed field path '{field_path}' at offset {pos}")
            token = match.group(1)
            steps.append(token[1:-1] if token.startswith('"') else int(token))
            pos = match.end()
            if pos < len(text) and text[pos] == ".":
                pos += 1
            continue

        end = pos
        while end < len(text) and text[end] not in ".[":
            end += 1
        token = text[pos:end]
        if not token:
            raise ValueError(f"Malformed field path '{field_path}': empty step")
        steps.append(int(token) if re.fullmatch(r"-?\d+", token) else token)
        pos = end + 1 if end < len(text) and text[end] == "." else end

    return tuple(steps)


def navigate(document: Any, steps: Iterable[Step]) -> Any:
    """Follow ``steps`` through ``document``; anything missing is None."""
    current = document
    for step in steps:
        if isinstance(current, dict):
            current = current.get(str(step), _MISSING)
        elif isinstance(current, list) and isinstance(step, int):
            try:
                current = current[step]
            except IndexError:
                current = _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            return None
    return current


@dataclass
class ReadResult:
    """Outcome of a single field read."""

    path: str
    field: Optional[str]
    value: Any = None
    fault: Optional[ArtifactFault] = None

    @property
    def ok(self) -> bool:
        return self.fault is None

    @property
    def not_found(self) -> bool:
        return isinstance(self.fault, ArtifactNotFoundFault)

    @property
    def parse_failed(self) -> bool:
        return isinstance(self.fault, ArtifactParseFault)

    @property
    def unreadable(self) -> bool:
        """The document exists but could not be read or parsed."""
        return self.fault is not None and not self.not_found


class StructuredArtifactReader:
    """
    Field extraction over any :class:`ArtifactStoreProtocol`.
    """

    __slots__ = ("_store",)

    def __init__(self, store: ArtifactStoreProtocol) -> None:
        self._store = store

    @property
    def store(self) -> ArtifactStoreProtocol:
        return self._store

    def load(self, path: str) -> Tuple[Any, Optional[ArtifactFault]]:
        """
        Parse the whole document at ``path``.

        Returns:
            ``(document, None)`` or ``(None, fault)``
        """
        try:
            text = self._store.read_text(path)
        except UnicodeDecodeError as exc:
            return None, ArtifactParseFault(path, f"not UTF-8 text ({exc.reason})")
        except ArtifactFault as fault:
            return None, fault
        except OSError as exc:
            return None, ArtifactReadFault(path, exc.strerror or str(exc))

        if text is None:
            logger.debug("Artifact %s not present", self._store.locate(path))
            return None, ArtifactNotFoundFault(path)

        try:
            return json.loads(text), None
        except json.JSONDecodeError as exc:
            return None, ArtifactParseFault(path, f"{exc.msg} (line {exc.lineno}, column {exc.colno})")

    def read(self, path: str, field_path: Optional[str] = None) -> ReadResult:
        """Read one field from one document."""
        document, fault = self.load(path)
        if fault is not None:
            return ReadResult(path=path, field=field_path, fault=fault)
        return ReadResult(
            path=path,
            field=field_path,
            value=navigate(document, parse_field_path(field_path)),
        )

    def read_many(self, requests: Iterable[Tuple[str, Optional[str]]]) -> List[ReadResult]:
        """
        Read several ``(path, field_path)`` pairs, parsing each document once.
        """
        cache: Dict[str, Tuple[Any, Optional[ArtifactFault]]] = {}
        results: List[ReadResult] = []
        for path, field_path in requests:
            if path not in cache:
                cache[path] = self.load(path)
            document, fault = cache[path]
            if fault is not None:
                results.append(ReadResult(path=path, field=field_path, fault=fault))
            else:
                results.append(ReadResult(
                    path=path,
                    field=field_path,
                    value=navigate(document, parse_field_path(field_path)),
                ))
        return results
