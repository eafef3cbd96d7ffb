"""
Convoy faults - runtime fault taxonomy.

A fault is a structured value with a stable code, a domain and retry
semantics. Faults are raised where an operation cannot continue (the
environment file writer) and returned inside results where the caller
decides what to do (the artifact reader, the dependency gate).

Domains:
- ARTIFACT: shared store reads and writes
- GATE: dependency waits
- PROCESS: unit launch and exit
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class Severity(str, Enum):
    """Fault severity levels."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"


class FaultDomain:
    """Functional area a fault belongs to."""

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.value = name
        self.description = description

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"FaultDomain(name='{self.name}')"

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, FaultDomain):
            return self.name == other.name
        return str(self) == str(other)

    def __hash__(self) -> int:
        return hash(self.name)


FaultDomain.ARTIFACT = FaultDomain("artifact", "Shared store reads and writes")
FaultDomain.GATE = FaultDomain("gate", "Dependency gate waits")
FaultDomain.PROCESS = FaultDomain("process", "Unit launch and exit")


DOMAIN_DEFAULTS = {
    FaultDomain.ARTIFACT: {"severity": Severity.ERROR, "retryable": True},
    FaultDomain.GATE: {"severity": Severity.WARN, "retryable": True},
    FaultDomain.PROCESS: {"severity": Severity.ERROR, "retryable": True},
}


class Fault(Exception):
    """
    Base fault class.

    Attributes:
        code: Stable machine-readable identifier (e.g. "ARTIFACT_NOT_FOUND")
        message: Human-readable summary
        domain: Fault domain
        severity: Fault severity
        retryable: Whether a fresh attempt may succeed
        metadata: Additional context data
    """

    def __init__(
        self,
        code: str,
        message: str,
        *,
        domain: FaultDomain,
        severity: Optional[Severity] = None,
        retryable: Optional[bool] = None,
        metadata: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.domain = domain

        defaults = DOMAIN_DEFAULTS.get(domain, {"severity": Severity.ERROR, "retryable": False})
        self.severity = severity or defaults["severity"]
        self.retryable = retryable if retryable is not None else defaults["retryable"]
        self.metadata = metadata or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(code={self.code!r}, domain={self.domain.value}, "
            f"severity={self.severity.value})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize fault for logging and status output."""
        return {
            "code": self.code,
            "message": self.message,
            "domain": self.domain.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "metadata": self.metadata,
        }


# ============================================================================
# ARTIFACT Faults
# ============================================================================

class ArtifactFault(Fault):
    """Base class for artifact store faults."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        severity: Optional[Severity] = None,
        retryable: Optional[bool] = None,
        metadata: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            code=code,
            message=message,
            domain=FaultDomain.ARTIFACT,
            severity=severity,
            retryable=retryable,
            metadata=metadata,
        )


class ArtifactNotFoundFault(ArtifactFault):
    """Upstream artifact has not been produced (yet)."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(
            code="ARTIFACT_NOT_FOUND",
            message=f"Artifact '{path}' does not exist",
            severity=Severity.WARN,
            retryable=True,
            metadata={"path": path},
        )


class ArtifactParseFault(ArtifactFault):
    """Artifact exists but is not a well-formed document."""

    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(
            code="ARTIFACT_PARSE_FAILURE",
            message=f"Artifact '{path}' is malformed: {reason}",
            retryable=False,
            metadata={"path": path, "reason": reason},
        )


class ArtifactReadFault(ArtifactFault):
    """Artifact exists but the store could not read it."""

    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(
            code="ARTIFACT_READ_ERROR",
            message=f"Could not read artifact '{path}': {reason}",
            retryable=False,
            metadata={"path": path, "reason": reason},
        )


class ArtifactWriteFault(ArtifactFault):
    """Destination store is unwritable."""

    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(
            code="ARTIFACT_WRITE_ERROR",
            message=f"Could not write artifact '{path}': {reason}",
            retryable=False,
            metadata={"path": path, "reason": reason},
        )


# ============================================================================
# GATE Faults
# ============================================================================

class GateFault(Fault):
    """Base class for dependency gate faults."""

    def __init__(self, code: str, message: str, *, retryable: bool, metadata: dict[str, Any]):
        super().__init__(
            code=code,
            message=message,
            domain=FaultDomain.GATE,
            retryable=retryable,
            metadata=metadata,
        )


class GateTimedOutFault(GateFault):
    """A gate wait exceeded its bound."""

    def __init__(self, unit: str, upstream: str, condition: str, timeout: float):
        super().__init__(
            code="GATE_TIMED_OUT",
            message=(
                f"Unit '{unit}' gave up waiting {timeout:g}s for "
                f"'{upstream}' to reach '{condition}'"
            ),
            retryable=True,
            metadata={"unit": unit, "upstream": upstream, "condition": condition, "timeout": timeout},
        )


class GateFailedFault(GateFault):
    """An upstream unit failed for good; the gate can never open."""

    def __init__(self, unit: str, upstream: str, condition: str):
        super().__init__(
            code="GATE_UPSTREAM_FAILED",
            message=f"Unit '{unit}' cannot start: upstream '{upstream}' failed before reaching '{condition}'",
            retryable=False,
            metadata={"unit": unit, "upstream": upstream, "condition": condition},
        )


# ============================================================================
# PROCESS Faults
# ============================================================================

class ProcessFault(Fault):
    """Base class for unit process faults."""

    def __init__(self, code: str, message: str, *, metadata: dict[str, Any]):
        super().__init__(
            code=code,
            message=message,
            domain=FaultDomain.PROCESS,
            metadata=metadata,
        )


class UnitExitFault(ProcessFault):
    """Unit terminated with a non-zero exit status."""

    def __init__(self, unit: str, exit_code: int):
        self.exit_code = exit_code
        super().__init__(
            code="UNIT_EXIT_NONZERO",
            message=f"Unit '{unit}' exited with status {exit_code}",
            metadata={"unit": unit, "exit_code": exit_code},
        )


class UnitLaunchFault(ProcessFault):
    """Unit could not be started at all."""

    def __init__(self, unit: str, reason: str):
        super().__init__(
            code="UNIT_LAUNCH_FAILED",
            message=f"Unit '{unit}' failed to launch: {reason}",
            metadata={"unit": unit, "reason": reason},
        )
