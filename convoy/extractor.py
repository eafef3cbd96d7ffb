"""
Extraction - turn structured artifact fields into a flat environment file.

This is the deployments-parser step of a devnet: once the deployer has
written its JSON manifests into the shared store, the extractor reads
the configured fields and publishes them as ``.env`` for every unit
further down the graph.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .artifacts.envfile import EnvironmentFileWriter, EnvironmentRecord, is_valid_key
from .artifacts.reader import ReadResult, StructuredArtifactReader, parse_field_path
from .artifacts.store import ArtifactRef, ArtifactStoreProtocol, normalize_path
from .faults import ArtifactFault, ArtifactWriteFault

logger = logging.getLogger("convoy.extractor")

EXIT_OK = 0
EXIT_FAILED = 1

DEFAULT_OUTPUT = ".env"
DEFAULT_NETWORK = "katana"


@dataclass(frozen=True)
class EnvBinding:
    """``key`` is sourced from ``field`` of the JSON ``document``."""

    key: str
    document: str
    field: Optional[str] = None

    @classmethod
    def parse(cls, spec: str) -> "EnvBinding":
        """Parse ``KEY=document:field``."""
        key, sep, source = spec.partition("=")
        if not sep or not key or not source:
            raise ValueError(f"Binding must look like KEY=document:field, got '{spec}'")
        ref = ArtifactRef.parse(source)
        return cls(key=key.strip(), document=ref.path, field=ref.selector)


@dataclass(frozen=True)
class ExtractionSpec:
    """
    What to extract and where to write it.

    Attributes:
        bindings: Ordered key bindings; output keeps this order
        output: Store path of the environment file
        strict: Treat a missing document as a failure instead of null
    """

    bindings: Tuple[EnvBinding, ...]
    output: str = DEFAULT_OUTPUT
    strict: bool = False

    def __post_init__(self):
        for binding in self.bindings:
            if not is_valid_key(binding.key):
                raise ValueError(f"Invalid environment key '{binding.key}'")
            normalize_path(binding.document)
            parse_field_path(binding.field)
        normalize_path(self.output)

        keys = [b.key for b in self.bindings]
        dupes = sorted({k for k in keys if keys.count(k) > 1})
        if dupes:
            raise ValueError(f"Duplicate extraction keys: {', '.join(dupes)}")


def kakarot_extraction(
    network: str = DEFAULT_NETWORK,
    output: str = DEFAULT_OUTPUT,
    strict: bool = False,
) -> ExtractionSpec:
    """
    Bindings for a Kakarot deployment: contract addresses from
    ``<network>/deployments.json`` and class hashes from
    ``<network>/declarations.json``.
    """
    deployments = f"{network}/deployments.json"
    declarations = f"{network}/declarations.json"
    return ExtractionSpec(
        bindings=(
            EnvBinding("KAKAROT_ADDRESS", deployments, "kakarot.address"),
            EnvBinding("DEPLOYER_ACCOUNT_ADDRESS", deployments, "deployer_account.address"),
            EnvBinding("UNINITIALIZED_ACCOUNT_CLASS_HASH", declarations, "uninitialized_account"),
            EnvBinding("ACCOUNT_CONTRACT_CLASS_HASH", declarations, "account_contract"),
        ),
        output=output,
        strict=strict,
    )


PRESETS = {
    "kakarot": kakarot_extraction,
}


@dataclass
class ExtractionReport:
    """Result of one extraction attempt."""

    record: EnvironmentRecord
    results: List[ReadResult] = field(default_factory=list)
    faults: List[ArtifactFault] = field(default_factory=list)
    written: bool = False

    @property
    def exit_code(self) -> int:
        return EXIT_OK if self.written else EXIT_FAILED


class Extractor:
    """
    Runs an :class:`ExtractionSpec` against a store.

    Missing documents and missing fields become ``null`` values (unless
    ``strict`` is set). An unreadable document or an unwritable store
    fails the attempt and leaves any previous output untouched.
    """

    def __init__(self, store: ArtifactStoreProtocol, spec: ExtractionSpec):
        self.store = store
        self.spec = spec
        self.reader = StructuredArtifactReader(store)
        self.writer = EnvironmentFileWriter(store)

    def extract(self) -> Tuple[EnvironmentRecord, List[ReadResult]]:
        """Read every binding; never raises for missing or malformed input."""
        results = self.reader.read_many((b.document, b.field) for b in self.spec.bindings)
        record = EnvironmentRecord(
            (binding.key, result.value)
            for binding, result in zip(self.spec.bindings, results)
        )
        return record, results

    def run(self) -> ExtractionReport:
        record, results = self.extract()
        report = ExtractionReport(record=record, results=results)

        seen = set()
        for result in results:
            if result.fault is None or result.path in seen:
                continue
            seen.add(result.path)
            report.faults.append(result.fault)
            if result.not_found and not self.spec.strict:
                logger.warning(
                    "%s missing; bindings from it are written as null",
                    self.store.locate(result.path),
                )
            else:
                logger.error("%s", result.fault)

        if any(r.unreadable for r in results) or (
            self.spec.strict and any(r.not_found for r in results)
        ):
            logger.error("Extraction aborted; %s left unchanged", self.store.locate(self.spec.output))
            return report

        try:
            self.writer.write(self.spec.output, record)
        except ArtifactWriteFault as fault:
            logger.error("%s", fault)
            report.faults.append(fault)
            return report

        report.written = True
        return report


def run_extraction(store: ArtifactStoreProtocol, spec: ExtractionSpec) -> int:
    """Run an extraction and return the process exit code."""
    return Extractor(store, spec).run().exit_code
