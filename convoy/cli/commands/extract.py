"""Extraction command - the deployments-parser step on its own."""

import logging
from typing import Optional, Sequence

from ...artifacts.store import ArtifactStore, ArtifactStoreProtocol
from ...extractor import (
    DEFAULT_NETWORK,
    DEFAULT_OUTPUT,
    EnvBinding,
    ExtractionReport,
    ExtractionSpec,
    Extractor,
    kakarot_extraction,
)

logger = logging.getLogger("convoy.cli.extract")


def build_spec(
    network: str = DEFAULT_NETWORK,
    output: str = DEFAULT_OUTPUT,
    bindings: Sequence[str] = (),
    strict: bool = False,
) -> ExtractionSpec:
    """
    Explicit ``KEY=document:field`` bindings replace the kakarot preset.
    """
    if bindings:
        return ExtractionSpec(
            bindings=tuple(EnvBinding.parse(b) for b in bindings),
            output=output,
            strict=strict,
        )
    return kakarot_extraction(network=network, output=output, strict=strict)


def extract(
    store_root: str,
    network: str = DEFAULT_NETWORK,
    output: str = DEFAULT_OUTPUT,
    bindings: Sequence[str] = (),
    strict: bool = False,
    store: Optional[ArtifactStoreProtocol] = None,
) -> ExtractionReport:
    """Run one extraction against a store directory."""
    store = store or ArtifactStore(store_root)
    spec = build_spec(network=network, output=output, bindings=bindings, strict=strict)
    logger.debug("Extracting %d bindings into %s", len(spec.bindings), store.locate(spec.output))
    return Extractor(store, spec).run()
