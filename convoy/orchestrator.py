"""
Orchestrator - runs a unit graph with dependency gating and restarts.

Per-unit state machine::

    pending -> waiting -> running -> succeeded | failed
       ^                                 |
       +------- restart policy ----------+       (stopped after shutdown)

One asyncio task owns every decision: it evaluates the graph, starts the
units whose gates are all open and applies restart delays. Each started
unit gets a supervisor task that only reports back (started, exited);
reports wake the decision loop, which re-evaluates. Evaluating twice
without an intervening report changes nothing.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .artifacts.store import ArtifactStore, ArtifactStoreProtocol
from .config import Settings, Topology
from .faults import (
    Fault,
    GateFailedFault,
    GateTimedOutFault,
    UnitExitFault,
    UnitLaunchFault,
)
from .gate import DependencyGate, GateOutcome, GateState
from .graph import UnitGraph
from .runners import DefaultRunner, UnitHandle, UnitRunner, wait_ready
from .units import Condition, UnitKind

logger = logging.getLogger("convoy.orchestrator")


class UnitState(str, Enum):
    PENDING = "pending"
    WAITING = "waiting"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    STOPPED = "stopped"


_DONE = (UnitState.SUCCEEDED, UnitState.FAILED, UnitState.STOPPED)


class OrchestratorError(Exception):
    """Raised when the orchestrator is driven out of order."""


@dataclass
class UnitStatus:
    """Runtime bookkeeping for one unit."""

    name: str
    state: UnitState = UnitState.PENDING
    attempts: int = 0
    restarts: int = 0
    consecutive_failures: int = 0
    exit_code: Optional[int] = None
    fault: Optional[Fault] = None
    final: bool = False
    since: float = field(default_factory=time.monotonic)
    waiting_since: Optional[float] = None
    restart_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "attempts": self.attempts,
            "restarts": self.restarts,
            "exit_code": self.exit_code,
            "final": self.final,
            "fault": self.fault.to_dict() if self.fault else None,
        }


@dataclass
class UnitEvent:
    """Emitted on every unit state transition."""

    unit: str
    state: UnitState
    attempt: int = 0
    message: Optional[str] = None
    fault: Optional[Fault] = None


@dataclass
class HealthReport:
    """Deployment health: healthy only when no problem was found."""

    healthy: bool
    units: Dict[str, str]
    problems: List[str] = field(default_factory=list)


class Orchestrator:
    """
    Starts units in dependency order and keeps them going.

    Responsibilities:
    - Open gates: a unit starts only once every upstream condition holds
    - Record completion and wake dependents
    - Apply restart policies with bounded exponential backoff
    - Fail dependents of units that failed for good, and nothing else
    - Shut everything down with a grace period
    """

    def __init__(
        self,
        graph: UnitGraph,
        runner: Optional[UnitRunner] = None,
        settings: Optional[Settings] = None,
        store: Optional[ArtifactStoreProtocol] = None,
    ):
        self.graph = graph
        self.settings = settings or Settings()
        self.store = store
        self.runner = runner or DefaultRunner(store)
        self.gate = DependencyGate(u.name for u in graph)
        self.event_handlers: List[Callable[[UnitEvent], None]] = []

        self._order = graph.topological_indices()
        self._status: List[UnitStatus] = [UnitStatus(u.name) for u in graph]
        self._handles: Dict[int, UnitHandle] = {}
        self._supervisors: Dict[int, asyncio.Task] = {}
        self._wakeup = asyncio.Event()
        self._changed = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._evaluating = False
        self._stopping = False
        self._shutdown_task: Optional[asyncio.Task] = None
        self.gate.on_transition(self._on_gate_transition)

    @classmethod
    def from_topology(
        cls,
        topology: Topology,
        runner: Optional[UnitRunner] = None,
    ) -> "Orchestrator":
        store = ArtifactStore(topology.store_root)
        return cls(topology.graph, runner=runner, settings=topology.settings, store=store)

    # ── Events ───────────────────────────────────────────────────────

    def on_event(self, handler: Callable[[UnitEvent], None]) -> None:
        """Register a handler receiving every :class:`UnitEvent`."""
        self.event_handlers.append(handler)

    def _emit_event(self, event: UnitEvent) -> None:
        for handler in self.event_handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error("Event handler error: %s", e)

    def _set_state(
        self,
        idx: int,
        state: UnitState,
        message: Optional[str] = None,
        fault: Optional[Fault] = None,
    ) -> None:
        status = self._status[idx]
        previous = status.state
        status.state = state
        status.since = time.monotonic()

        if state is UnitState.FAILED:
            logger.error("  %s: %s -> %s (%s)", status.name, previous.value, state.value, fault or message)
        elif state is UnitState.WAITING:
            logger.debug("  %s: %s -> %s", status.name, previous.value, state.value)
        else:
            logger.info("  %s: %s -> %s", status.name, previous.value, state.value)

        self._emit_event(UnitEvent(
            unit=status.name,
            state=state,
            attempt=status.attempts,
            message=message,
            fault=fault,
        ))
        self._notify()

    def _on_gate_transition(self, name: str, record) -> None:
        self._notify()

    def _notify(self) -> None:
        """Wake :meth:`wait_for` and :meth:`wait_healthy` callers."""
        self._changed.set()
        self._changed = asyncio.Event()

    def _wake(self) -> None:
        self._wakeup.set()

    # ── Decision loop ────────────────────────────────────────────────

    def evaluate(self, now: Optional[float] = None) -> int:
        """
        One pass over the graph in start order.

        Returns:
            Number of transitions made (0 when nothing was due)
        """
        if self._evaluating:
            self._wake()
            return 0
        if self._stopping:
            return 0

        self._evaluating = True
        try:
            now = time.monotonic() if now is None else now
            changes = 0
            for idx in self._order:
                changes += self._evaluate_unit(idx, now)
            return changes
        finally:
            self._evaluating = False

    def _evaluate_unit(self, idx: int, now: float) -> int:
        status = self._status[idx]
        changes = 0

        if status.state in (UnitState.SUCCEEDED, UnitState.FAILED) and status.restart_at is not None:
            if now < status.restart_at:
                return 0
            status.restart_at = None
            self.gate.reset(status.name)
            self._set_state(idx, UnitState.PENDING, message="restarting")
            changes += 1

        if status.state is UnitState.PENDING:
            status.waiting_since = now
            self._set_state(idx, UnitState.WAITING)
            changes += 1

        if status.state is not UnitState.WAITING:
            return changes

        outcome, upstream, condition = self._gates(idx)
        if outcome is GateOutcome.READY:
            self._launch(idx)
            return changes + 1

        unit = self.graph.unit(idx)
        if outcome is GateOutcome.FAILED:
            self._fail(idx, GateFailedFault(unit.name, upstream, condition.value), retry=False)
            return changes + 1

        timeout = self.settings.gate_timeout
        if timeout is not None and status.waiting_since is not None and now - status.waiting_since >= timeout:
            self._fail(idx, GateTimedOutFault(unit.name, upstream, condition.value, timeout))
            return changes + 1

        return changes

    def _gates(self, idx: int) -> Tuple[GateOutcome, Optional[str], Optional[Condition]]:
        """Combined outcome of every gate of ``idx``; the first blocker wins."""
        blocker: Tuple[GateOutcome, Optional[str], Optional[Condition]] = (GateOutcome.READY, None, None)
        for up in self.graph.upstream_of(idx):
            name = self.graph.unit(up).name
            condition = self.graph.edge_condition(idx, up)
            outcome = self.gate.check(name, condition)
            if outcome is GateOutcome.FAILED:
                return outcome, name, condition
            if outcome is GateOutcome.WAITING and blocker[0] is GateOutcome.READY:
                blocker = (outcome, name, condition)
        return blocker

    def _launch(self, idx: int) -> None:
        status = self._status[idx]
        status.attempts += 1
        status.exit_code = None
        status.fault = None
        status.waiting_since = None
        self._set_state(idx, UnitState.RUNNING, message=f"attempt {status.attempts}")
        self._supervisors[idx] = asyncio.ensure_future(self._supervise(idx))

    async def _supervise(self, idx: int) -> None:
        unit = self.graph.unit(idx)
        try:
            handle = await self.runner.start(unit)
        except UnitLaunchFault as fault:
            self._complete(idx, None, fault)
            return
        except Exception as e:
            self._complete(idx, None, UnitLaunchFault(unit.name, str(e)))
            return

        self._handles[idx] = handle
        if self._stopping:
            handle.terminate()
        probe: Optional[asyncio.Task] = None
        if unit.ready is not None:
            probe = asyncio.ensure_future(self._probe(idx, handle))
        else:
            self.gate.mark_running(unit.name)
            self._wake()

        try:
            exit_code = await handle.wait()
        finally:
            if probe is not None:
                probe.cancel()
            self._handles.pop(idx, None)

        self._complete(idx, exit_code)

    async def _probe(self, idx: int, handle: UnitHandle) -> None:
        unit = self.graph.unit(idx)
        if await wait_ready(unit.ready, handle) and self._status[idx].state is UnitState.RUNNING:
            logger.info("  %s: accepting connections", unit.name)
            self.gate.mark_running(unit.name)
            self._wake()

    def _complete(self, idx: int, exit_code: Optional[int], fault: Optional[Fault] = None) -> None:
        """Record the end of an attempt; runs on the event loop."""
        self._supervisors.pop(idx, None)
        status = self._status[idx]
        unit = self.graph.unit(idx)
        status.exit_code = exit_code

        if self._stopping:
            status.final = True
            self._record_gate(unit.name, exit_code, final=True)
            self._set_state(idx, UnitState.STOPPED, message="shutdown")
            self._wake()
            return

        if fault is None and exit_code == 0:
            status.consecutive_failures = 0
            restart = unit.restart.should_restart(True)
            status.final = not restart
            self.gate.mark_exited(unit.name, 0, final=not restart)
            self._set_state(idx, UnitState.SUCCEEDED)
            if restart:
                self._schedule_restart(idx)
            self._wake()
            return

        if fault is None:
            fault = UnitExitFault(unit.name, exit_code)
        self._fail(idx, fault, exit_code=exit_code)

    def _fail(
        self,
        idx: int,
        fault: Fault,
        *,
        exit_code: Optional[int] = None,
        retry: bool = True,
    ) -> None:
        status = self._status[idx]
        unit = self.graph.unit(idx)
        status.fault = fault
        status.consecutive_failures += 1

        restart = (
            retry
            and unit.restart.should_restart(False)
            and not self.settings.backoff.exhausted(status.restarts)
        )
        status.final = not restart
        self._record_gate(unit.name, exit_code, final=not restart)
        self._set_state(idx, UnitState.FAILED, fault=fault)

        if restart:
            status.restarts += 1
            self._schedule_restart(idx)
        elif retry and unit.restart.should_restart(False):
            logger.error("  %s: giving up after %d restarts", unit.name, status.restarts)
        self._wake()

    def _record_gate(self, name: str, exit_code: Optional[int], *, final: bool) -> None:
        if exit_code is None:
            self.gate.mark_failed(name, final=final)
        else:
            self.gate.mark_exited(name, exit_code, final=final)

    def _schedule_restart(self, idx: int) -> None:
        status = self._status[idx]
        delay = self.settings.backoff.delay(max(status.consecutive_failures, 1))
        status.restart_at = time.monotonic() + delay
        logger.info("  %s: restarting in %.2fs", status.name, delay)

    def _settled(self) -> bool:
        return all(s.state in _DONE and s.final for s in self._status)

    async def _run_loop(self) -> None:
        logger.info("Starting %d units...", len(self.graph))
        while not self._stopping:
            self._wakeup.clear()
            self.evaluate()
            if self._settled():
                break
            try:
                await asyncio.wait_for(self._wakeup.wait(), self.settings.tick)
            except asyncio.TimeoutError:
                pass
        logger.info("Orchestrator loop finished")

    # ── Public API ───────────────────────────────────────────────────

    async def start(self) -> None:
        """Begin orchestrating in the background."""
        if self._loop_task is not None:
            raise OrchestratorError("Orchestrator already started")
        self._loop_task = asyncio.ensure_future(self._run_loop())

    async def run(self) -> HealthReport:
        """
        Run until every unit is finished for good, or until cancelled.

        Cancellation (e.g. a signal handler cancelling this coroutine)
        shuts all units down before propagating.
        """
        if self._loop_task is None:
            await self.start()
        try:
            await asyncio.shield(self._loop_task)
        except asyncio.CancelledError:
            await self.shutdown()
            raise
        if self._shutdown_task is not None:
            await asyncio.shield(self._shutdown_task)
        else:
            await self._drain()
        return self.health()

    async def _drain(self) -> None:
        if self._supervisors:
            await asyncio.gather(*list(self._supervisors.values()), return_exceptions=True)

    def request_shutdown(self, grace_period: Optional[float] = None) -> "asyncio.Task[None]":
        """Begin shutting down without waiting; safe to call from signal handlers."""
        if self._shutdown_task is None:
            self._stopping = True
            self._wake()
            self._shutdown_task = asyncio.ensure_future(self._shutdown(grace_period))
        return self._shutdown_task

    async def shutdown(self, grace_period: Optional[float] = None) -> None:
        """
        Terminate every running unit, wait up to the grace period, then kill.
        """
        await asyncio.shield(self.request_shutdown(grace_period))

    async def _shutdown(self, grace_period: Optional[float]) -> None:
        grace = self.settings.grace_period if grace_period is None else grace_period

        logger.info("Stopping units...")
        for idx in reversed(self._order):
            handle = self._handles.get(idx)
            if handle is not None:
                logger.info("  %s: terminating", self._status[idx].name)
                handle.terminate()

        pending = list(self._supervisors.values())
        if pending:
            _done, still_running = await asyncio.wait(pending, timeout=grace)
            if still_running:
                for idx, handle in list(self._handles.items()):
                    if handle.returncode is None:
                        logger.warning(
                            "  %s: did not stop within %.1fs, killing", self._status[idx].name, grace,
                        )
                        handle.kill()
                _done, still_running = await asyncio.wait(still_running, timeout=grace)
                for task in still_running:
                    task.cancel()
            await self._drain()

        for idx, status in enumerate(self._status):
            status.final = True
            status.restart_at = None
            self.gate.mark_final(status.name)
            if status.state not in _DONE:
                self._set_state(idx, UnitState.STOPPED, message="shutdown")

        if self._loop_task is not None:
            await self._loop_task
        logger.info("All units stopped")

    async def wait_for(
        self,
        name: str,
        *states: UnitState,
        timeout: Optional[float] = None,
    ) -> UnitState:
        """
        Block until unit ``name`` is in one of ``states``.

        Raises:
            asyncio.TimeoutError: If the timeout expires first
        """
        idx = self.graph.index_of(name)

        async def _wait() -> UnitState:
            while self._status[idx].state not in states:
                await self._changed.wait()
            return self._status[idx].state

        return await asyncio.wait_for(_wait(), timeout)

    async def wait_healthy(self, timeout: Optional[float] = None) -> HealthReport:
        """Block until :meth:`health` reports healthy."""

        async def _wait() -> HealthReport:
            while True:
                report = self.health()
                if report.healthy:
                    return report
                await self._changed.wait()

        return await asyncio.wait_for(_wait(), timeout)

    # ── Introspection ────────────────────────────────────────────────

    def state(self, name: str) -> UnitState:
        return self._status[self.graph.index_of(name)].state

    def unit_status(self, name: str) -> UnitStatus:
        return self._status[self.graph.index_of(name)]

    def failed_units(self) -> List[str]:
        """Units that failed and will not be attempted again."""
        return [s.name for s in self._status if s.state is UnitState.FAILED and s.final]

    def _required_conditions(self, idx: int) -> Set[Condition]:
        downstream = self.graph.downstream_of(idx)
        if not downstream:
            return {self.graph.unit(idx).condition}
        return {self.graph.edge_condition(d, idx) for d in downstream}

    def health(self) -> HealthReport:
        """
        Healthy when every unit whose exit is waited on has succeeded, and
        every long-running unit that others need started is still running.
        Units without dependents are held to their own condition.
        """
        problems: List[str] = []
        for idx, unit in enumerate(self.graph):
            status = self._status[idx]
            gate_state = self.gate.state(unit.name)
            for condition in sorted(self._required_conditions(idx), key=lambda c: c.value):
                if condition is Condition.EXITED_ZERO:
                    if status.state is not UnitState.SUCCEEDED:
                        problems.append(f"{unit.name} has not exited successfully ({status.state.value})")
                elif unit.kind is UnitKind.SERVICE:
                    if status.state is not UnitState.RUNNING or gate_state is not GateState.RUNNING:
                        problems.append(f"{unit.name} is not running ({status.state.value})")
                elif status.state not in (UnitState.RUNNING, UnitState.SUCCEEDED):
                    problems.append(f"{unit.name} has not started ({status.state.value})")

        return HealthReport(
            healthy=not problems,
            units={s.name: s.state.value for s in self._status},
            problems=problems,
        )

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of unit and gate state, keyed by unit name."""
        gates = self.gate.snapshot()
        return {
            s.name: {**s.to_dict(), "gate": gates[s.name]}
            for s in self._status
        }


class OrchestratorManager:
    """
    Async context manager around an :class:`Orchestrator`.

    Usage:
        async with OrchestratorManager(orchestrator) as orch:
            await orch.wait_healthy(timeout=60)
        # every unit is stopped here
    """

    def __init__(self, orchestrator: Orchestrator):
        self.orchestrator = orchestrator

    async def __aenter__(self) -> Orchestrator:
        await self.orchestrator.start()
        return self.orchestrator

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.orchestrator.shutdown()
        return False
