"""
Errors and faults (errors.py, faults.py)

Tests load-time error formatting and the runtime fault taxonomy.
"""

import pytest

from convoy.errors import (
    ConfigError,
    ConvoyError,
    CycleDetectedError,
    DuplicateUnitError,
    ErrorSpan,
    UnknownDependencyError,
)
from convoy.faults import (
    ArtifactNotFoundFault,
    ArtifactParseFault,
    ArtifactReadFault,
    ArtifactWriteFault,
    Fault,
    FaultDomain,
    GateFailedFault,
    GateTimedOutFault,
    Severity,
    UnitExitFault,
    UnitLaunchFault,
)


# ============================================================================
# ConvoyError
# ============================================================================

class TestConvoyError:

    def test_message_only(self):
        err = ConvoyError("bad topology")
        assert err.format_error() == "ConvoyError: bad topology"
        assert str(err) == err.format_error()

    def test_full_diagnostics(self):
        err = ConfigError(
            "Unit 'rpc' is invalid",
            span=ErrorSpan("convoy.yaml", "units.rpc"),
            suggestion="Add a command.",
            details={"unit": "rpc"},
        )
        text = err.format_error()
        assert text.startswith("ConfigError: Unit 'rpc' is invalid")
        assert "at convoy.yaml (units.rpc)" in text
        assert "- unit: rpc" in text
        assert "Suggestion: Add a command." in text

    def test_subclasses(self):
        assert issubclass(ConfigError, ConvoyError)
        assert issubclass(DuplicateUnitError, ConvoyError)
        assert issubclass(UnknownDependencyError, ConvoyError)
        assert issubclass(CycleDetectedError, ConvoyError)

    def test_unknown_dependency_lists_available(self):
        err = UnknownDependencyError("rpc", "parser", ["mongo", "starknet"])
        assert err.details["available"] == "mongo, starknet"

    def test_cycle_attributes(self):
        err = CycleDetectedError(["a", "b"])
        assert err.cycle == ["a", "b"]
        assert err.details["cycle_length"] == 2
        assert "a -> b -> a" in err.message


# ============================================================================
# Fault base
# ============================================================================

class TestFault:

    def test_domain_defaults(self):
        fault = Fault("X", "boom", domain=FaultDomain.GATE)
        assert fault.severity is Severity.WARN
        assert fault.retryable is True

    def test_unknown_domain_defaults(self):
        fault = Fault("X", "boom", domain=FaultDomain("custom"))
        assert fault.severity is Severity.ERROR
        assert fault.retryable is False

    def test_explicit_overrides(self):
        fault = Fault("X", "boom", domain=FaultDomain.ARTIFACT, severity=Severity.INFO, retryable=False)
        assert fault.severity is Severity.INFO
        assert fault.retryable is False

    def test_str(self):
        assert str(Fault("X", "boom", domain=FaultDomain.GATE)) == "[X] boom"

    def test_to_dict(self):
        data = Fault("X", "boom", domain=FaultDomain.PROCESS, metadata={"a": 1}).to_dict()
        assert data == {
            "code": "X",
            "message": "boom",
            "domain": "process",
            "severity": "error",
            "retryable": True,
            "metadata": {"a": 1},
        }

    def test_domain_equality(self):
        assert FaultDomain.ARTIFACT == FaultDomain("artifact")
        assert FaultDomain.ARTIFACT == "artifact"
        assert FaultDomain.ARTIFACT != FaultDomain.GATE

    def test_is_exception(self):
        with pytest.raises(Fault):
            raise ArtifactWriteFault("/x/.env", "read-only file system")


# ============================================================================
# Concrete faults
# ============================================================================

class TestConcreteFaults:

    def test_artifact_not_found(self):
        fault = ArtifactNotFoundFault("katana/deployments.json")
        assert fault.code == "ARTIFACT_NOT_FOUND"
        assert fault.domain == FaultDomain.ARTIFACT
        assert fault.severity is Severity.WARN
        assert fault.retryable is True
        assert fault.path == "katana/deployments.json"

    def test_artifact_parse(self):
        fault = ArtifactParseFault("katana/deployments.json", "Expecting value")
        assert fault.code == "ARTIFACT_PARSE_FAILURE"
        assert fault.retryable is False
        assert "Expecting value" in fault.message

    def test_artifact_read(self):
        fault = ArtifactReadFault("katana/deployments.json", "Is a directory")
        assert fault.code == "ARTIFACT_READ_ERROR"
        assert fault.domain == FaultDomain.ARTIFACT
        assert fault.retryable is False
        assert fault.metadata == {"path": "katana/deployments.json", "reason": "Is a directory"}

    def test_artifact_write(self):
        fault = ArtifactWriteFault(".env", "permission denied")
        assert fault.code == "ARTIFACT_WRITE_ERROR"
        assert fault.metadata == {"path": ".env", "reason": "permission denied"}

    def test_gate_timed_out(self):
        fault = GateTimedOutFault("rpc", "parser", "exited-zero", 30.0)
        assert fault.code == "GATE_TIMED_OUT"
        assert fault.domain == FaultDomain.GATE
        assert fault.retryable is True
        assert "30s" in fault.message

    def test_gate_failed(self):
        fault = GateFailedFault("rpc", "parser", "exited-zero")
        assert fault.code == "GATE_UPSTREAM_FAILED"
        assert fault.retryable is False

    def test_unit_exit(self):
        fault = UnitExitFault("deployer", 2)
        assert fault.code == "UNIT_EXIT_NONZERO"
        assert fault.exit_code == 2
        assert fault.domain == FaultDomain.PROCESS

    def test_unit_launch(self):
        fault = UnitLaunchFault("deployer", "No such file or directory")
        assert fault.code == "UNIT_LAUNCH_FAILED"
        assert fault.metadata["reason"] == "No such file or directory"
