"""
Convoy - service startup orchestration with dependency gating and
artifact handoff.

- Units: services and run-to-completion tasks, declared in a topology
- Gates: a unit starts once its upstream units are started or exited zero
- Artifacts: a shared store; extractor units turn JSON manifests written
  by one unit into a flat ``.env`` read by the next ones
- Restarts: never / on-failure / always, with bounded exponential backoff
"""

__version__ = "0.3.0"

from .units import Unit, UnitKind, Condition, RestartPolicy, Dependency, ReadyProbe
from .graph import UnitGraph
from .errors import (
    ConvoyError,
    ConfigError,
    CycleDetectedError,
    DuplicateUnitError,
    UnknownDependencyError,
)
from .faults import (
    Fault,
    FaultDomain,
    Severity,
    ArtifactNotFoundFault,
    ArtifactParseFault,
    ArtifactWriteFault,
    GateTimedOutFault,
    GateFailedFault,
    UnitExitFault,
    UnitLaunchFault,
)
from .config import BackoffPolicy, Settings, Topology, TopologyLoader
from .gate import DependencyGate, GateOutcome, GateState
from .extractor import EnvBinding, ExtractionSpec, Extractor, kakarot_extraction, run_extraction
from .runners import CallableRunner, DefaultRunner, ExtractorRunner, ProcessRunner
from .orchestrator import (
    HealthReport,
    Orchestrator,
    OrchestratorManager,
    UnitEvent,
    UnitState,
)

__all__ = [
    "__version__",
    # Model
    "Unit",
    "UnitKind",
    "Condition",
    "RestartPolicy",
    "Dependency",
    "ReadyProbe",
    "UnitGraph",
    # Errors
    "ConvoyError",
    "ConfigError",
    "CycleDetectedError",
    "DuplicateUnitError",
    "UnknownDependencyError",
    # Faults
    "Fault",
    "FaultDomain",
    "Severity",
    "ArtifactNotFoundFault",
    "ArtifactParseFault",
    "ArtifactWriteFault",
    "GateTimedOutFault",
    "GateFailedFault",
    "UnitExitFault",
    "UnitLaunchFault",
    # Config
    "BackoffPolicy",
    "Settings",
    "Topology",
    "TopologyLoader",
    # Gates
    "DependencyGate",
    "GateOutcome",
    "GateState",
    # Extraction
    "EnvBinding",
    "ExtractionSpec",
    "Extractor",
    "kakarot_extraction",
    "run_extraction",
    # Runners
    "CallableRunner",
    "DefaultRunner",
    "ExtractorRunner",
    "ProcessRunner",
    # Orchestrator
    "HealthReport",
    "Orchestrator",
    "OrchestratorManager",
    "UnitEvent",
    "UnitState",
]
