"""
Dependency gates - block a unit until its upstream units are far enough.

Every unit has one gate record tracking what dependents can observe::

    pending -> running -> completed | failed
       ^                      |
       +------ reset ---------+   (restart policy re-attempts)

Two conditions can be waited for:

- ``started``: the record has left ``pending`` (the unit was started and,
  when it has a readiness probe, accepted a connection)
- ``exited-zero``: the record is ``completed`` with exit status 0

A ``failed`` record marked final can never open an ``exited-zero`` gate,
so waiting on it fails immediately instead of running into the timeout.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from .units import Condition

logger = logging.getLogger("convoy.gate")


class GateState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class GateOutcome(str, Enum):
    READY = "ready"
    WAITING = "waiting"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass
class GateRecord:
    """Observed completion state of one unit."""

    state: GateState = GateState.PENDING
    exit_code: Optional[int] = None
    started: bool = False
    final: bool = False
    changed_at: float = 0.0

    def to_dict(self) -> Dict[str, object]:
        return {
            "state": self.state.value,
            "exit_code": self.exit_code,
            "started": self.started,
            "final": self.final,
        }


class DependencyGate:
    """
    Gate records for every unit of a run, with blocking waits.

    Transitions are recorded synchronously by the orchestrator; waiters
    are woken on every transition and re-check their condition.
    """

    def __init__(self, names: Iterable[str]):
        self._records: Dict[str, GateRecord] = {name: GateRecord() for name in names}
        self._changed = asyncio.Event()
        self._listeners: List[Callable[[str, GateRecord], None]] = []

    # ── Transitions ──────────────────────────────────────────────────

    def mark_running(self, name: str) -> None:
        """The unit started (and passed its readiness probe, if any)."""
        record = self._records[name]
        record.state = GateState.RUNNING
        record.started = True
        record.exit_code = None
        record.final = False
        self._transition(name)

    def mark_exited(self, name: str, exit_code: int, *, final: bool = False) -> None:
        """The unit exited; zero completes the gate, anything else fails it."""
        record = self._records[name]
        record.exit_code = exit_code
        record.state = GateState.COMPLETED if exit_code == 0 else GateState.FAILED
        record.final = final
        self._transition(name)

    def mark_failed(self, name: str, *, final: bool = False) -> None:
        """The unit failed without an exit status (launch, timeout, upstream)."""
        record = self._records[name]
        record.state = GateState.FAILED
        record.final = final
        self._transition(name)

    def mark_final(self, name: str) -> None:
        """No further attempt will be made for this unit."""
        record = self._records[name]
        if not record.final:
            record.final = True
            self._transition(name)

    def reset(self, name: str) -> None:
        """The unit is about to be attempted again."""
        self._records[name] = GateRecord()
        self._transition(name)

    def _transition(self, name: str) -> None:
        record = self._records[name]
        record.changed_at = time.monotonic()
        logger.debug("Gate %s -> %s (final=%s)", name, record.state.value, record.final)
        self._changed.set()
        self._changed = asyncio.Event()
        for listener in list(self._listeners):
            try:
                listener(name, record)
            except Exception as e:
                logger.error("Gate listener error: %s", e)

    def on_transition(self, listener: Callable[[str, GateRecord], None]) -> None:
        self._listeners.append(listener)

    # ── Queries ──────────────────────────────────────────────────────

    def record(self, name: str) -> GateRecord:
        return self._records[name]

    def state(self, name: str) -> GateState:
        return self._records[name].state

    def check(self, name: str, condition: Condition) -> GateOutcome:
        """Non-blocking evaluation of one gate condition."""
        record = self._records[name]

        if condition is Condition.STARTED:
            if record.state in (GateState.RUNNING, GateState.COMPLETED):
                return GateOutcome.READY
            if record.state is GateState.FAILED:
                if record.started:
                    return GateOutcome.READY
                if record.final:
                    return GateOutcome.FAILED
            return GateOutcome.WAITING

        if record.state is GateState.COMPLETED and record.exit_code == 0:
            return GateOutcome.READY
        if record.state is GateState.FAILED and record.final:
            return GateOutcome.FAILED
        return GateOutcome.WAITING

    async def wait(
        self,
        name: str,
        condition: Condition,
        timeout: Optional[float] = None,
    ) -> GateOutcome:
        """
        Block until ``name`` satisfies ``condition``.

        Returns:
            READY, FAILED (upstream failed for good) or TIMED_OUT
        """
        condition = Condition.parse(condition)
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while True:
            outcome = self.check(name, condition)
            if outcome is not GateOutcome.WAITING:
                return outcome

            changed = self._changed
            if deadline is None:
                await changed.wait()
                continue

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.debug("Gate wait on %s (%s) timed out", name, condition.value)
                return GateOutcome.TIMED_OUT
            try:
                await asyncio.wait_for(changed.wait(), remaining)
            except asyncio.TimeoutError:
                pass

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        return {name: record.to_dict() for name, record in self._records.items()}

    def __contains__(self, name: str) -> bool:
        return name in self._records
