"""
Shared test fixtures and helpers for the Convoy test suite.
"""

import asyncio
import json
import os
from typing import Any, Dict, List, Optional

import pytest

from convoy.artifacts import FilesystemArtifactStore, MemoryArtifactStore
from convoy.config import Settings


DEPLOYMENTS = {
    "kakarot": {"address": "0xabc"},
    "deployer_account": {"address": "0xdef"},
}
DECLARATIONS = {
    "uninitialized_account": "0x1",
    "account_contract": "0x2",
}

KAKAROT_ENV = (
    "KAKAROT_ADDRESS=0xabc\n"
    "DEPLOYER_ACCOUNT_ADDRESS=0xdef\n"
    "UNINITIALIZED_ACCOUNT_CLASS_HASH=0x1\n"
    "ACCOUNT_CONTRACT_CLASS_HASH=0x2\n"
)


@pytest.fixture(autouse=True)
def _clean_convoy_env(monkeypatch):
    """Keep CONVOY_* variables of the outer environment out of the tests."""
    for key in list(os.environ):
        if key.startswith("CONVOY_"):
            monkeypatch.delenv(key)


# ============================================================================
# Stores
# ============================================================================


@pytest.fixture
def memory_store():
    return MemoryArtifactStore()


@pytest.fixture
def fs_store(tmp_path):
    return FilesystemArtifactStore(str(tmp_path / "deployments"))


def write_kakarot_documents(store, network: str = "katana", declarations: bool = True) -> None:
    store.write_text(f"{network}/deployments.json", json.dumps(DEPLOYMENTS))
    if declarations:
        store.write_text(f"{network}/declarations.json", json.dumps(DECLARATIONS))


# ============================================================================
# Orchestrator helpers
# ============================================================================


def make_settings(**overrides: Any) -> Settings:
    """Settings tuned for fast tests."""
    data: Dict[str, Any] = {
        "gate_timeout": 5,
        "tick": 0.01,
        "grace_period": 1,
        "backoff": {"initial": 0.01, "factor": 2.0, "max": 0.05},
    }
    backoff = overrides.pop("backoff", None)
    if backoff:
        data["backoff"].update(backoff)
    data.update(overrides)
    return Settings.from_dict(data)


def exits(code: int, delay: float = 0.0, log: Optional[List[str]] = None):
    """Unit body that optionally records its start, sleeps, then exits."""

    async def body(unit, env):
        if log is not None:
            log.append(unit.name)
        await asyncio.sleep(delay)
        return code

    return body


def serves(log: Optional[List[str]] = None):
    """Unit body that runs until cancelled."""

    async def body(unit, env):
        if log is not None:
            log.append(unit.name)
        await asyncio.Event().wait()
        return 0

    return body


def flaky(failures: int):
    """Unit body that fails ``failures`` times, then succeeds."""
    calls: List[int] = []

    async def body(unit, env):
        calls.append(1)
        return 1 if len(calls) <= failures else 0

    body.calls = calls
    return body
