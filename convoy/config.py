"""
Config system - topology files plus layered orchestrator settings.

Merge precedence for settings (later overrides earlier):
1. Built-in defaults
2. ``settings:`` section of the topology file (YAML)
3. Environment variables (``CONVOY_*`` prefix, ``__`` for nesting)
4. Manual overrides
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .errors import ConfigError, ErrorSpan
from .extractor import PRESETS, EnvBinding, ExtractionSpec
from .graph import UnitGraph
from .units import Condition, Dependency, ReadyProbe, RestartPolicy, Unit, UnitKind

DEFAULT_FILES = ("convoy.yaml", "convoy.yml")


@dataclass
class BackoffPolicy:
    """
    Bounded exponential backoff between attempts of one unit.

    ``max_retries`` of None retries forever.
    """

    initial: float = 1.0
    factor: float = 2.0
    max: float = 30.0
    max_retries: Optional[int] = None

    def delay(self, attempt: int) -> float:
        """Delay before re-attempt number ``attempt`` (1-based)."""
        attempt = max(attempt, 1)
        return min(self.initial * (self.factor ** (attempt - 1)), self.max)

    def exhausted(self, retries: int) -> bool:
        return self.max_retries is not None and retries >= self.max_retries


@dataclass
class Settings:
    """Orchestrator tunables."""

    gate_timeout: Optional[float] = 300.0
    tick: float = 0.05
    grace_period: float = 10.0
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "Settings":
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(
                f"Unknown settings: {', '.join(unknown)}",
                suggestion=f"Valid settings are: {', '.join(sorted(known))}",
            )

        backoff_data = data.pop("backoff", None) or {}
        if not isinstance(backoff_data, Mapping):
            raise ConfigError("settings.backoff must be a mapping")
        backoff_known = {f.name for f in fields(BackoffPolicy)}
        unknown = sorted(set(backoff_data) - backoff_known)
        if unknown:
            raise ConfigError(f"Unknown backoff settings: {', '.join(unknown)}")

        try:
            backoff = BackoffPolicy(**backoff_data)
            settings = cls(backoff=backoff, **data)
            settings._validate()
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid settings: {exc}") from exc
        return settings

    def _validate(self) -> None:
        if self.gate_timeout is not None:
            self.gate_timeout = float(self.gate_timeout)
            if self.gate_timeout <= 0:
                raise ValueError("gate_timeout must be positive or null")
        self.tick = float(self.tick)
        self.grace_period = float(self.grace_period)
        if self.tick <= 0:
            raise ValueError("tick must be positive")
        if self.grace_period < 0:
            raise ValueError("grace_period must not be negative")
        b = self.backoff
        b.initial, b.factor, b.max = float(b.initial), float(b.factor), float(b.max)
        if b.initial < 0 or b.max < 0 or b.factor < 1:
            raise ValueError("backoff needs initial >= 0, max >= 0 and factor >= 1")
        if b.max_retries is not None:
            b.max_retries = int(b.max_retries)
            if b.max_retries < 0:
                raise ValueError("backoff.max_retries must not be negative")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gate_timeout": self.gate_timeout,
            "tick": self.tick,
            "grace_period": self.grace_period,
            "backoff": {
                "initial": self.backoff.initial,
                "factor": self.backoff.factor,
                "max": self.backoff.max,
                "max_retries": self.backoff.max_retries,
            },
        }


@dataclass
class Topology:
    """A loaded, validated deployment topology."""

    graph: UnitGraph
    settings: Settings
    store_root: str = "deployments"
    source: Optional[str] = None


class TopologyLoader:
    """
    Loads a topology file and merges settings from the environment.
    """

    def __init__(self, env_prefix: str = "CONVOY_"):
        self.env_prefix = env_prefix
        self.config_data: Dict[str, Any] = {}
        self.source: Optional[str] = None

    @classmethod
    def load(
        cls,
        path: Optional[str] = None,
        env_prefix: str = "CONVOY_",
        overrides: Optional[Dict[str, Any]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> Topology:
        """
        Load and validate a topology.

        Args:
            path: Topology file; auto-detected from the working directory if omitted
            env_prefix: Prefix for environment variable overrides
            overrides: Manual overrides (highest precedence)
            environ: Environment to read overrides from (default ``os.environ``)

        Raises:
            ConfigError: Missing file, malformed YAML or invalid values
            UnknownDependencyError, DuplicateUnitError, CycleDetectedError
        """
        loader = cls(env_prefix=env_prefix)

        if path is None:
            path = next((p for p in DEFAULT_FILES if Path(p).exists()), None)
            if path is None:
                raise ConfigError(
                    "No topology file found",
                    suggestion=f"Create {DEFAULT_FILES[0]} (see `convoy init`) or pass -f FILE.",
                )

        loader._load_yaml_file(Path(path))
        loader._load_from_env(os.environ if environ is None else environ)
        if overrides:
            loader._merge_dict(loader.config_data, overrides)

        return loader.build()

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source: Optional[str] = None) -> Topology:
        loader = cls()
        loader.config_data = dict(data)
        loader.source = source
        return loader.build()

    def _load_yaml_file(self, path: Path) -> None:
        """Load topology from YAML file."""
        if not path.exists():
            raise ConfigError(f"Topology file '{path}' does not exist")
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Malformed YAML in '{path}': {exc}", span=ErrorSpan(str(path))) from exc

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError("Topology file must contain a mapping", span=ErrorSpan(str(path)))

        self.source = str(path)
        self._merge_dict(self.config_data, data)

        store = self.config_data.get("store")
        if isinstance(store, str) and not Path(store).is_absolute():
            self.config_data["store"] = str(path.parent / store)

    def _load_from_env(self, environ: Mapping[str, str]) -> None:
        """Load settings from environment variables."""
        for key, value in environ.items():
            if key.startswith(self.env_prefix):
                self._set_nested(key, value)

    def _set_nested(self, key: str, value: str) -> None:
        """Convert CONVOY_BACKOFF__MAX_RETRIES to settings.backoff.max_retries."""
        parts = key[len(self.env_prefix):].lower().split("__")

        if parts == ["store"]:
            self.config_data["store"] = value
            return

        current = self.config_data
        for part in ["settings"] + parts[:-1]:
            child = current.get(part)
            if child is None:
                child = current[part] = {}
            elif not isinstance(child, dict):
                raise ConfigError(
                    f"Cannot apply {key}: '{part}' is not a mapping",
                    suggestion=f"Remove {key} or make '{part}' a mapping in the topology file.",
                )
            current = child
        current[parts[-1]] = self._parse_value(value)

    def _parse_value(self, value: str) -> Any:
        """Parse string value to appropriate type."""
        if value.lower() in ("true", "yes"):
            return True
        if value.lower() in ("false", "no"):
            return False
        if value.lower() in ("null", "none", ""):
            return None

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        if value.startswith(("{", "[")):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                pass

        return value

    def _merge_dict(self, target: dict, source: dict) -> None:
        """Deep merge source into target."""
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                self._merge_dict(target[key], value)
            else:
                target[key] = value

    # ── Building ─────────────────────────────────────────────────────

    def build(self) -> Topology:
        data = self.config_data
        units_data = data.get("units") or {}
        if not isinstance(units_data, dict):
            raise ConfigError("'units' must be a mapping of unit name to definition", span=self._span("units"))

        units = [self._build_unit(name, spec) for name, spec in units_data.items()]
        graph = UnitGraph.from_units(units)
        settings = Settings.from_dict(data.get("settings"))
        store_root = data.get("store") or "deployments"

        return Topology(graph=graph, settings=settings, store_root=str(store_root), source=self.source)

    def _span(self, key: str) -> Optional[ErrorSpan]:
        return ErrorSpan(self.source, key) if self.source else None

    def _build_unit(self, name: str, spec: Any) -> Unit:
        span = self._span(f"units.{name}")
        spec = spec or {}
        if not isinstance(spec, dict):
            raise ConfigError(f"Unit '{name}' must be a mapping", span=span)

        try:
            extract = self._build_extraction(spec.get("extract"))
            kind_value = spec.get("kind", "task" if extract else "service")
            kind = UnitKind(str(kind_value).lower())
            if extract is not None and kind is not UnitKind.TASK:
                raise ValueError("extractor units must be of kind 'task'")

            command = self._build_command(spec.get("command"))
            if command is None and extract is None:
                raise ValueError("a unit needs either 'command' or 'extract'")

            condition = spec.get("condition")
            ready = spec.get("ready")

            return Unit(
                name=str(name),
                kind=kind,
                condition=Condition.parse(condition) if condition is not None else None,
                restart=RestartPolicy.parse(spec.get("restart")),
                depends_on=self._build_dependencies(spec.get("depends_on")),
                command=command,
                workdir=spec.get("workdir"),
                environment=self._build_environment(spec.get("environment")),
                env_files=self._as_tuple(spec.get("env_file")),
                ready=self._build_probe(ready) if ready is not None else None,
                extract=extract,
            )
        except ValueError as exc:
            raise ConfigError(f"Unit '{name}' is invalid: {exc}", span=span) from exc

    @staticmethod
    def _as_tuple(value: Any) -> Tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            return (value,)
        return tuple(str(v) for v in value)

    @staticmethod
    def _build_command(value: Any):
        if value is None:
            return None
        if isinstance(value, str):
            if not value.strip():
                raise ValueError("command must not be empty")
            return value
        if isinstance(value, list) and value:
            return tuple(str(v) for v in value)
        raise ValueError("command must be a string or a non-empty list")

    @staticmethod
    def _build_environment(value: Any) -> Tuple[Tuple[str, str], ...]:
        if value is None:
            return ()
        if isinstance(value, dict):
            return tuple((str(k), "" if v is None else str(v)) for k, v in value.items())
        if isinstance(value, list):
            pairs: List[Tuple[str, str]] = []
            for item in value:
                key, sep, val = str(item).partition("=")
                if not sep:
                    raise ValueError(f"environment entry '{item}' must look like KEY=VALUE")
                pairs.append((key, val))
            return tuple(pairs)
        raise ValueError("environment must be a mapping or a list of KEY=VALUE")

    @staticmethod
    def _build_dependencies(value: Any) -> Tuple[Dependency, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            value = [value]
        if isinstance(value, list):
            return tuple(Dependency(str(name)) for name in value)
        if isinstance(value, dict):
            deps: List[Dependency] = []
            for name, opts in value.items():
                condition = None
                if isinstance(opts, dict) and opts.get("condition") is not None:
                    condition = Condition.parse(opts["condition"])
                elif isinstance(opts, str):
                    condition = Condition.parse(opts)
                deps.append(Dependency(str(name), condition))
            return tuple(deps)
        raise ValueError("depends_on must be a list or a mapping")

    @staticmethod
    def _build_probe(value: Any) -> ReadyProbe:
        if isinstance(value, str):
            return ReadyProbe.parse(value)
        if isinstance(value, dict) and "tcp" in value:
            return ReadyProbe.parse(str(value["tcp"]), value.get("interval", 0.5))
        raise ValueError("ready must be 'host:port' or {tcp: 'host:port'}")

    @staticmethod
    def _build_extraction(value: Any) -> Optional[ExtractionSpec]:
        if value is None:
            return None
        if not isinstance(value, dict):
            raise ValueError("extract must be a mapping")

        output = str(value.get("output", ".env"))
        strict = bool(value.get("strict", False))

        preset = value.get("preset")
        if preset is not None:
            if preset not in PRESETS:
                raise ValueError(f"unknown extraction preset '{preset}'")
            kwargs = {"output": output, "strict": strict}
            if value.get("network"):
                kwargs["network"] = str(value["network"])
            return PRESETS[preset](**kwargs)

        bindings_data = value.get("bindings")
        if not isinstance(bindings_data, dict) or not bindings_data:
            raise ValueError("extract needs a 'preset' or a non-empty 'bindings' mapping")

        bindings: List[EnvBinding] = []
        for key, source in bindings_data.items():
            if isinstance(source, str):
                bindings.append(EnvBinding.parse(f"{key}={source}"))
            elif isinstance(source, dict) and source.get("document"):
                selector = source.get("field")
                bindings.append(EnvBinding(
                    str(key), str(source["document"]), None if selector is None else str(selector),
                ))
            else:
                raise ValueError(f"binding '{key}' needs a document")
        return ExtractionSpec(bindings=tuple(bindings), output=output, strict=strict)
