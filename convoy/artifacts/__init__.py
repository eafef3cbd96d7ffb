"""
Convoy artifacts - the shared store and the handoff between units.

- ``store``   : ArtifactStore protocol, filesystem and memory stores
- ``reader``  : field extraction from JSON artifacts
- ``envfile`` : ``KEY=VALUE`` environment files, written atomically
"""

from .store import (
    ArtifactRef,
    ArtifactStore,
    ArtifactStoreProtocol,
    FilesystemArtifactStore,
    MemoryArtifactStore,
    normalize_path,
)
from .reader import (
    ReadResult,
    StructuredArtifactReader,
    navigate,
    parse_field_path,
)
from .envfile import (
    EnvironmentFileWriter,
    EnvironmentRecord,
    is_valid_key,
    parse_env_text,
    read_env_file,
    render_value,
)

__all__ = [
    "ArtifactRef",
    "ArtifactStore",
    "ArtifactStoreProtocol",
    "FilesystemArtifactStore",
    "MemoryArtifactStore",
    "normalize_path",
    "ReadResult",
    "StructuredArtifactReader",
    "navigate",
    "parse_field_path",
    "EnvironmentFileWriter",
    "EnvironmentRecord",
    "is_valid_key",
    "parse_env_text",
    "read_env_file",
    "render_value",
]
