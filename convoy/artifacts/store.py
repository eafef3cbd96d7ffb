"""
Artifact Store - shared content location between units.

Provides two implementations:

- **MemoryArtifactStore** - ephemeral, test-friendly
- **FilesystemArtifactStore** - a directory, typically a volume shared
  by every unit of a deployment

Write discipline is single writer per artifact, many readers, replace
not merge. Writes go to a temporary file next to the destination and
are renamed over it, so readers see either the old or the new content.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional

from ..faults import ArtifactReadFault, ArtifactWriteFault

logger = logging.getLogger("convoy.artifacts.store")


@dataclass(frozen=True)
class ArtifactRef:
    """
    A path inside a store plus an optional field selector (reads) or
    literal content (writes).
    """

    path: str
    selector: Optional[str] = None
    content: Optional[str] = None

    @classmethod
    def parse(cls, value: str) -> "ArtifactRef":
        """Parse ``document:field`` (field optional)."""
        path, sep, selector = value.partition(":")
        return cls(path=path, selector=selector if sep else None)

    def __str__(self) -> str:
        return f"{self.path}:{self.selector}" if self.selector else self.path


def normalize_path(path: str) -> str:
    """Canonical store-relative form of ``path``; rejects absolute paths and ``..``."""
    parts = PurePosixPath(path.replace("\\", "/")).parts
    if not parts or parts[0] == "/" or ".." in parts:
        raise ValueError(f"Artifact path must be relative to the store: '{path}'")
    return "/".join(p for p in parts if p != ".")


# ── Abstract Protocol ───────────────────────────────────────────────────


class ArtifactStoreProtocol:
    """Minimal interface every store must implement."""

    def exists(self, path: str) -> bool:
        raise NotImplementedError

    def read_text(self, path: str) -> Optional[str]:
        """
        Return the artifact content, or None if it does not exist.

        Raises:
            ArtifactReadFault: If the artifact exists but cannot be read
        """
        raise NotImplementedError

    def write_text(self, path: str, content: str) -> None:
        """Replace the artifact content atomically."""
        raise NotImplementedError

    def delete(self, path: str) -> bool:
        raise NotImplementedError

    def list_paths(self, prefix: str = "") -> List[str]:
        raise NotImplementedError

    def locate(self, path: str) -> str:
        """Human-readable location of an artifact, for logs."""
        return path

    def read(self, ref: ArtifactRef) -> Optional[str]:
        return self.read_text(ref.path)

    def write(self, ref: ArtifactRef) -> None:
        if ref.content is None:
            raise ValueError(f"ArtifactRef '{ref.path}' carries no content to write")
        self.write_text(ref.path, ref.content)


# ── Memory Store ────────────────────────────────────────────────────────


class MemoryArtifactStore(ArtifactStoreProtocol):
    """
    Ephemeral in-memory artifact store.

    Useful for tests and in-process pipelines.
    """

    __slots__ = ("_files",)

    def __init__(self, files: Optional[Dict[str, str]] = None) -> None:
        self._files: Dict[str, str] = {}
        for path, content in (files or {}).items():
            self.write_text(path, content)

    def exists(self, path: str) -> bool:
        return normalize_path(path) in self._files

    def read_text(self, path: str) -> Optional[str]:
        return self._files.get(normalize_path(path))

    def write_text(self, path: str, content: str) -> None:
        self._files[normalize_path(path)] = content

    def delete(self, path: str) -> bool:
        return self._files.pop(normalize_path(path), None) is not None

    def list_paths(self, prefix: str = "") -> List[str]:
        return sorted(p for p in self._files if p.startswith(prefix))

    def locate(self, path: str) -> str:
        return f"memory://{normalize_path(path)}"

    def __len__(self) -> int:
        return len(self._files)


# ── Filesystem Store ────────────────────────────────────────────────────


class FilesystemArtifactStore(ArtifactStoreProtocol):
    """
    Directory-backed artifact store::

        <root>/
          .env                       <- flattened environment file
          katana/deployments.json    <- written by the deployer
          katana/declarations.json
    """

    __slots__ = ("root",)

    def __init__(self, root: str = "deployments") -> None:
        self.root = Path(root)

    def resolve(self, path: str) -> Path:
        """Absolute filesystem path of an artifact."""
        return self.root / normalize_path(path)

    def exists(self, path: str) -> bool:
        return self.resolve(path).is_file()

    def read_text(self, path: str) -> Optional[str]:
        target = self.resolve(path)
        try:
            return target.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise ArtifactReadFault(str(target), exc.strerror or str(exc)) from exc

    def write_text(self, path: str, content: str) -> None:
        target = self.resolve(path)
        tmp_name = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=target.parent, prefix=f".{target.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as fh:
                fh.write(content)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, target)  # atomic on POSIX
            tmp_name = None
        except OSError as exc:
            raise ArtifactWriteFault(str(target), exc.strerror or str(exc)) from exc
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
        logger.info("Wrote artifact %s", target)

    def delete(self, path: str) -> bool:
        target = self.resolve(path)
        if target.is_file():
            target.unlink()
            return True
        return False

    def list_paths(self, prefix: str = "") -> List[str]:
        if not self.root.is_dir():
            return []
        found = []
        for f in sorted(self.root.rglob("*")):
            if f.is_file() and not f.name.endswith(".tmp"):
                rel = f.relative_to(self.root).as_posix()
                if rel.startswith(prefix):
                    found.append(rel)
        return found

    def locate(self, path: str) -> str:
        return str(self.resolve(path))

    def __repr__(self) -> str:
        return f"FilesystemArtifactStore(root='{self.root}')"


def ArtifactStore(root: str = "deployments") -> FilesystemArtifactStore:
    """
    Convenience constructor - returns a :class:`FilesystemArtifactStore`.

    Use ``MemoryArtifactStore()`` for tests.
    """
    return FilesystemArtifactStore(root)
