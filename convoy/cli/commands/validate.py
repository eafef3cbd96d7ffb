"""Topology validation command."""

from dataclasses import dataclass, field
from typing import List, Optional

from ...config import Topology, TopologyLoader
from ...errors import ConvoyError
from ...units import RestartPolicy, UnitKind


@dataclass
class ValidationResult:
    """Result of topology validation."""

    is_valid: bool
    unit_count: int = 0
    layers: List[List[str]] = field(default_factory=list)
    order: List[str] = field(default_factory=list)
    faults: List[str] = field(default_factory=list)
    topology: Optional[Topology] = None


def validate_topology(path: Optional[str] = None) -> ValidationResult:
    """
    Load a topology and report its start order.

    Args:
        path: Topology file (auto-detected when omitted)

    Returns:
        ValidationResult; load errors are reported in ``faults``
    """
    try:
        topology = TopologyLoader.load(path)
    except ConvoyError as e:
        return ValidationResult(is_valid=False, faults=[e.format_error()])

    faults: List[str] = []
    graph = topology.graph
    for unit in graph:
        if unit.kind is UnitKind.TASK and unit.restart is RestartPolicy.ALWAYS and graph.dependents(unit.name):
            faults.append(
                f"Unit '{unit.name}' is a task with restart 'always'; "
                f"dependents may see it reset while waiting"
            )

    return ValidationResult(
        is_valid=True,
        unit_count=len(graph),
        layers=graph.layers(),
        order=graph.topological_order(),
        faults=faults,
        topology=topology,
    )
