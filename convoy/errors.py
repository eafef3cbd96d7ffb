"""
Convoy load-time error types with rich diagnostics.

These are raised while a topology is loaded and validated, before any
unit is started. Runtime failures are expressed as faults instead
(see :mod:`convoy.faults`).
"""

from typing import List, Dict, Any, Optional
from dataclasses import dataclass


@dataclass
class ErrorSpan:
    """File location for error context."""

    file: str
    key: Optional[str] = None

    def __str__(self) -> str:
        if self.key:
            return f"{self.file} ({self.key})"
        return self.file


class ConvoyError(Exception):
    """Base error for all topology load errors."""

    def __init__(
        self,
        message: str,
        *,
        span: Optional[ErrorSpan] = None,
        suggestion: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.span = span
        self.suggestion = suggestion
        self.details = details or {}

    def format_error(self) -> str:
        """Format error with diagnostics."""
        lines = [f"{self.__class__.__name__}: {self.message}"]

        if self.span:
            lines.append(f"   at {self.span}")

        if self.details:
            lines.append("\n   Details:")
            for key, value in self.details.items():
                lines.append(f"   - {key}: {value}")

        if self.suggestion:
            lines.append(f"\n   Suggestion: {self.suggestion}")

        return "\n".join(lines)

    def __str__(self) -> str:
        return self.format_error()


class ConfigError(ConvoyError):
    """Topology file or settings are invalid."""


class DuplicateUnitError(ConvoyError):
    """Two units were declared under the same name."""

    def __init__(self, name: str, *, span: Optional[ErrorSpan] = None):
        self.name = name
        super().__init__(
            f"Unit '{name}' is declared more than once",
            span=span,
            suggestion="Unit names must be unique within a topology.",
            details={"unit": name},
        )


class UnknownDependencyError(ConvoyError):
    """A unit depends on a name that is not declared."""

    def __init__(
        self,
        unit: str,
        dependency: str,
        available: List[str],
        *,
        span: Optional[ErrorSpan] = None,
    ):
        self.unit = unit
        self.dependency = dependency
        super().__init__(
            f"Unit '{unit}' depends on unknown unit '{dependency}'",
            span=span,
            suggestion=f"Declare '{dependency}' or remove it from depends_on.",
            details={"available": ", ".join(sorted(available)) or "(none)"},
        )


class CycleDetectedError(ConvoyError):
    """
    Circular dependency detected in the unit graph.

    Example:
        rpc depends on parser
        parser depends on deployer
        deployer depends on rpc  <- CYCLE
    """

    def __init__(
        self,
        cycle: List[str],
        *,
        span: Optional[ErrorSpan] = None,
    ):
        self.cycle = cycle
        cycle_repr = " -> ".join(cycle) + f" -> {cycle[0]}"

        super().__init__(
            f"Circular dependency detected: {cycle_repr}",
            span=span,
            suggestion=(
                "Break the cycle by removing one of the depends_on entries. "
                "A unit can only wait on units that never wait on it."
            ),
            details={"cycle": cycle, "cycle_length": len(cycle)},
        )
