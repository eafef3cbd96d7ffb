"""
Unit model - the schedulable pieces of a deployment topology.

Units are created once while a topology is loaded and never mutated
afterwards. Runtime state lives in the orchestrator, not here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, Optional, Tuple, Union

if TYPE_CHECKING:
    from .extractor import ExtractionSpec


class UnitKind(str, Enum):
    """What a unit does once started."""
    SERVICE = "service"   # long-running
    TASK = "task"         # run-to-completion


class Condition(str, Enum):
    """Completion condition a dependent waits for."""
    STARTED = "started"
    EXITED_ZERO = "exited-zero"

    @classmethod
    def parse(cls, value: Union[str, "Condition"]) -> "Condition":
        """Parse a condition, accepting docker compose spellings."""
        if isinstance(value, Condition):
            return value
        normalized = str(value).strip().lower().replace("_", "-")
        aliases = {
            "started": cls.STARTED,
            "service-started": cls.STARTED,
            "exited-zero": cls.EXITED_ZERO,
            "completed": cls.EXITED_ZERO,
            "service-completed-successfully": cls.EXITED_ZERO,
        }
        if normalized not in aliases:
            raise ValueError(
                f"Unknown condition '{value}'. Expected one of: started, exited-zero"
            )
        return aliases[normalized]


class RestartPolicy(str, Enum):
    """When a finished unit is started again."""
    NEVER = "never"
    ON_FAILURE = "on-failure"
    ALWAYS = "always"

    @classmethod
    def parse(cls, value: Union[str, "RestartPolicy", None]) -> "RestartPolicy":
        if value is None:
            return cls.NEVER
        if isinstance(value, RestartPolicy):
            return value
        normalized = str(value).strip().lower().replace("_", "-")
        if normalized == "no":
            return cls.NEVER
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(
                f"Unknown restart policy '{value}'. Expected one of: never, on-failure, always"
            ) from None

    def should_restart(self, succeeded: bool) -> bool:
        if self is RestartPolicy.ALWAYS:
            return True
        if self is RestartPolicy.ON_FAILURE:
            return not succeeded
        return False


@dataclass(frozen=True)
class Dependency:
    """Edge to an upstream unit, optionally overriding its condition."""

    name: str
    condition: Optional[Condition] = None


@dataclass(frozen=True)
class ReadyProbe:
    """TCP readiness check that must pass before a unit counts as started."""

    host: str
    port: int
    interval: float = 0.5

    @classmethod
    def parse(cls, address: str, interval: float = 0.5) -> "ReadyProbe":
        host, sep, port = address.rpartition(":")
        if not sep or not port.isdigit():
            raise ValueError(f"Readiness probe must be 'host:port', got '{address}'")
        return cls(host=host or "127.0.0.1", port=int(port), interval=float(interval))


@dataclass(frozen=True)
class Unit:
    """
    One schedulable piece of work in the deployment graph.

    Attributes:
        name: Unique name
        kind: Long-running service or run-to-completion task
        condition: What dependents wait for unless an edge overrides it
        restart: Restart policy
        depends_on: Upstream edges, in declaration order
        command: argv tuple or a shell string (None for in-process units)
        workdir: Working directory for the command
        environment: Extra environment, as ordered (key, value) pairs
        env_files: Store-relative env files loaded when the unit starts
        ready: Optional readiness probe
        extract: Extraction to run in-process instead of a command
    """

    name: str
    kind: UnitKind = UnitKind.SERVICE
    condition: Optional[Condition] = None
    restart: RestartPolicy = RestartPolicy.NEVER
    depends_on: Tuple[Dependency, ...] = ()
    command: Union[str, Tuple[str, ...], None] = None
    workdir: Optional[str] = None
    environment: Tuple[Tuple[str, str], ...] = ()
    env_files: Tuple[str, ...] = ()
    ready: Optional[ReadyProbe] = None
    extract: Optional["ExtractionSpec"] = field(default=None, compare=False)

    def __post_init__(self):
        if not self.name:
            raise ValueError("Unit must have a name")
        if self.condition is None:
            default = Condition.STARTED if self.kind is UnitKind.SERVICE else Condition.EXITED_ZERO
            object.__setattr__(self, "condition", default)

    @property
    def upstream(self) -> Tuple[str, ...]:
        """Upstream unit names, in declaration order."""
        return tuple(dep.name for dep in self.depends_on)

    @property
    def env(self) -> Dict[str, str]:
        return dict(self.environment)

    @property
    def is_extractor(self) -> bool:
        return self.extract is not None
