"""
Config System (config.py)

Tests BackoffPolicy, Settings and TopologyLoader.
"""

from pathlib import Path

import pytest
import yaml

from convoy.config import BackoffPolicy, Settings, TopologyLoader
from convoy.errors import ConfigError, CycleDetectedError, UnknownDependencyError
from convoy.units import Condition, RestartPolicy, UnitKind


def write_topology(path: Path, data) -> str:
    path.write_text(yaml.safe_dump(data, sort_keys=False))
    return str(path)


DEVNET = {
    "store": "deployments",
    "settings": {"gate_timeout": 60, "backoff": {"max": 10}},
    "units": {
        "starknet": {
            "command": ["katana", "--chain-id", "KKRT"],
            "restart": "on-failure",
            "ready": {"tcp": "127.0.0.1:5050", "interval": 0.2},
        },
        "kakarot-deployer": {
            "kind": "task",
            "command": "deploy.sh",
            "environment": {"STARKNET_NETWORK": "katana"},
            "depends_on": {"starknet": {"condition": "service_started"}},
        },
        "deployments-parser": {
            "extract": {"preset": "kakarot", "network": "katana"},
            "depends_on": {"kakarot-deployer": {"condition": "service_completed_successfully"}},
        },
        "kakarot-rpc": {
            "command": ["kakarot-rpc"],
            "env_file": ".env",
            "depends_on": ["deployments-parser"],
        },
    },
}


# ============================================================================
# BackoffPolicy
# ============================================================================

class TestBackoffPolicy:

    def test_exponential_and_bounded(self):
        policy = BackoffPolicy(initial=1.0, factor=2.0, max=5.0)
        assert [policy.delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_attempt_floor(self):
        assert BackoffPolicy().delay(0) == 1.0

    def test_unbounded_retries(self):
        assert not BackoffPolicy().exhausted(1000)

    def test_max_retries(self):
        policy = BackoffPolicy(max_retries=2)
        assert not policy.exhausted(1)
        assert policy.exhausted(2)


# ============================================================================
# Settings
# ============================================================================

class TestSettings:

    def test_defaults(self):
        settings = Settings.from_dict(None)
        assert settings.gate_timeout == 300.0
        assert settings.tick == 0.05
        assert settings.grace_period == 10.0
        assert settings.backoff == BackoffPolicy()

    def test_from_dict(self):
        settings = Settings.from_dict({"gate_timeout": None, "backoff": {"initial": 0.5, "max_retries": 3}})
        assert settings.gate_timeout is None
        assert settings.backoff.initial == 0.5
        assert settings.backoff.max_retries == 3

    def test_unknown_key(self):
        with pytest.raises(ConfigError, match="Unknown settings: timeout"):
            Settings.from_dict({"timeout": 3})

    def test_unknown_backoff_key(self):
        with pytest.raises(ConfigError, match="Unknown backoff settings: jitter"):
            Settings.from_dict({"backoff": {"jitter": 0.1}})

    @pytest.mark.parametrize("data", [
        {"gate_timeout": 0},
        {"tick": -1},
        {"grace_period": -1},
        {"backoff": {"factor": 0.5}},
        {"backoff": {"max_retries": -1}},
        {"tick": "fast"},
    ])
    def test_invalid_values(self, data):
        with pytest.raises(ConfigError, match="Invalid settings"):
            Settings.from_dict(data)

    def test_to_dict_roundtrip(self):
        settings = Settings.from_dict({"tick": 0.1, "backoff": {"max_retries": 4}})
        assert Settings.from_dict(settings.to_dict()) == settings


# ============================================================================
# TopologyLoader
# ============================================================================

class TestTopologyLoader:

    def test_load_devnet(self, tmp_path):
        path = write_topology(tmp_path / "convoy.yaml", DEVNET)
        topology = TopologyLoader.load(path, environ={})

        graph = topology.graph
        assert graph.topological_order() == [
            "starknet", "kakarot-deployer", "deployments-parser", "kakarot-rpc",
        ]
        assert topology.source == path
        assert topology.store_root == str(tmp_path / "deployments")
        assert topology.settings.gate_timeout == 60.0
        assert topology.settings.backoff.max == 10.0

    def test_unit_fields(self, tmp_path):
        topology = TopologyLoader.load(write_topology(tmp_path / "convoy.yaml", DEVNET), environ={})
        graph = topology.graph

        starknet = graph.unit("starknet")
        assert starknet.kind is UnitKind.SERVICE
        assert starknet.command == ("katana", "--chain-id", "KKRT")
        assert starknet.restart is RestartPolicy.ON_FAILURE
        assert starknet.ready.port == 5050
        assert starknet.ready.interval == 0.2

        deployer = graph.unit("kakarot-deployer")
        assert deployer.kind is UnitKind.TASK
        assert deployer.command == "deploy.sh"
        assert deployer.env == {"STARKNET_NETWORK": "katana"}
        assert deployer.depends_on[0].condition is Condition.STARTED

        parser = graph.unit("deployments-parser")
        assert parser.kind is UnitKind.TASK
        assert parser.is_extractor
        assert parser.extract.bindings[0].document == "katana/deployments.json"
        assert graph.edge_condition(
            graph.index_of("deployments-parser"), graph.index_of("kakarot-deployer"),
        ) is Condition.EXITED_ZERO

        rpc = graph.unit("kakarot-rpc")
        assert rpc.env_files == (".env",)

    def test_environment_overrides(self, tmp_path):
        path = write_topology(tmp_path / "convoy.yaml", DEVNET)
        topology = TopologyLoader.load(path, environ={
            "CONVOY_GATE_TIMEOUT": "5",
            "CONVOY_BACKOFF__MAX_RETRIES": "2",
            "CONVOY_STORE": "/srv/deployments",
            "OTHER": "ignored",
        })
        assert topology.settings.gate_timeout == 5.0
        assert topology.settings.backoff.max_retries == 2
        assert topology.settings.backoff.max == 10.0
        assert topology.store_root == "/srv/deployments"

    def test_explicit_overrides_win(self, tmp_path):
        path = write_topology(tmp_path / "convoy.yaml", DEVNET)
        topology = TopologyLoader.load(
            path,
            environ={"CONVOY_GATE_TIMEOUT": "5"},
            overrides={"settings": {"gate_timeout": 7}},
        )
        assert topology.settings.gate_timeout == 7.0

    def test_environment_overrides_null_settings(self, tmp_path):
        path = tmp_path / "convoy.yaml"
        path.write_text("settings:\nunits: {a: {command: [\"true\"]}}\n")
        topology = TopologyLoader.load(str(path), environ={
            "CONVOY_TICK": "0.1",
            "CONVOY_BACKOFF__MAX_RETRIES": "3",
        })
        assert topology.settings.tick == 0.1
        assert topology.settings.backoff.max_retries == 3

    def test_environment_override_into_scalar_setting(self, tmp_path):
        path = tmp_path / "convoy.yaml"
        path.write_text("settings: {backoff: 5}\nunits: {a: {command: [\"true\"]}}\n")
        with pytest.raises(ConfigError, match="'backoff' is not a mapping"):
            TopologyLoader.load(str(path), environ={"CONVOY_BACKOFF__MAX": "2"})

    def test_auto_detect(self, tmp_path, monkeypatch):
        write_topology(tmp_path / "convoy.yml", DEVNET)
        monkeypatch.chdir(tmp_path)
        topology = TopologyLoader.load(environ={})
        assert len(topology.graph) == 4

    def test_no_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(ConfigError, match="No topology file found"):
            TopologyLoader.load(environ={})

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="does not exist"):
            TopologyLoader.load(str(tmp_path / "nope.yaml"), environ={})

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "convoy.yaml"
        path.write_text("units: [unclosed\n")
        with pytest.raises(ConfigError, match="Malformed YAML"):
            TopologyLoader.load(str(path), environ={})

    def test_parse_value(self):
        loader = TopologyLoader()
        assert loader._parse_value("true") is True
        assert loader._parse_value("no") is False
        assert loader._parse_value("null") is None
        assert loader._parse_value("3") == 3
        assert loader._parse_value("0.5") == 0.5
        assert loader._parse_value('{"max": 3}') == {"max": 3}
        assert loader._parse_value("katana") == "katana"


class TestTopologyFromDict:

    def test_minimal(self):
        topology = TopologyLoader.from_dict({"units": {"a": {"command": "true"}}})
        assert topology.store_root == "deployments"
        assert topology.source is None

    def test_unknown_dependency(self):
        with pytest.raises(UnknownDependencyError):
            TopologyLoader.from_dict({"units": {"a": {"command": "true", "depends_on": ["b"]}}})

    def test_cycle(self):
        with pytest.raises(CycleDetectedError):
            TopologyLoader.from_dict({"units": {
                "a": {"command": "true", "depends_on": ["b"]},
                "b": {"command": "true", "depends_on": "a"},
            }})

    def test_unit_needs_command_or_extract(self):
        with pytest.raises(ConfigError, match="needs either 'command' or 'extract'"):
            TopologyLoader.from_dict({"units": {"a": {"kind": "task"}}})

    def test_extractor_must_be_task(self):
        with pytest.raises(ConfigError, match="must be of kind 'task'"):
            TopologyLoader.from_dict({"units": {"p": {
                "kind": "service", "extract": {"preset": "kakarot"},
            }}})

    def test_unknown_preset(self):
        with pytest.raises(ConfigError, match="unknown extraction preset"):
            TopologyLoader.from_dict({"units": {"p": {"extract": {"preset": "nope"}}}})

    def test_binding_forms(self):
        topology = TopologyLoader.from_dict({"units": {"p": {"extract": {
            "output": "out.env",
            "strict": True,
            "bindings": {
                "A": "d.json:a.b",
                "B": {"document": "d.json", "field": "c"},
            },
        }}}})
        spec = topology.graph.unit("p").extract
        assert spec.output == "out.env"
        assert spec.strict is True
        assert [(b.key, b.document, b.field) for b in spec.bindings] == [
            ("A", "d.json", "a.b"),
            ("B", "d.json", "c"),
        ]

    def test_environment_list_form(self):
        topology = TopologyLoader.from_dict({"units": {"a": {
            "command": "true", "environment": ["A=1", "B=x=y"],
        }}})
        assert topology.graph.unit("a").env == {"A": "1", "B": "x=y"}

    def test_environment_list_needs_equals(self):
        with pytest.raises(ConfigError, match="KEY=VALUE"):
            TopologyLoader.from_dict({"units": {"a": {"command": "true", "environment": ["A"]}}})

    def test_unknown_condition(self):
        with pytest.raises(ConfigError, match="Unknown condition"):
            TopologyLoader.from_dict({"units": {
                "a": {"command": "true"},
                "b": {"command": "true", "depends_on": {"a": {"condition": "healthy"}}},
            }})

    def test_units_must_be_mapping(self):
        with pytest.raises(ConfigError, match="'units' must be a mapping"):
            TopologyLoader.from_dict({"units": ["a"]})


    @pytest.mark.parametrize("binding,message", [
        ({"bad-key": "d.json:x"}, "Invalid environment key 'bad-key'"),
        ({"A": "../outside.json:x"}, "relative to the store"),
        ({"A": {"document": "d.json", "field": "a..b"}}, "Malformed field path"),
    ])
    def test_invalid_bindings_rejected_at_load(self, binding, message):
        with pytest.raises(ConfigError, match=message):
            TopologyLoader.from_dict({"units": {"p": {
                "extract": {"bindings": binding},
                "restart": "on-failure",
            }}})

    def test_extract_output_outside_store(self):
        with pytest.raises(ConfigError, match="relative to the store"):
            TopologyLoader.from_dict({"units": {"p": {"extract": {
                "preset": "kakarot", "output": "/tmp/.env",
            }}}})
