"""Run a topology in the foreground."""

import asyncio
import logging
import signal
from typing import Optional

from ...config import Topology
from ...orchestrator import Orchestrator, UnitEvent, UnitState

logger = logging.getLogger("convoy.cli.up")


async def _run(orchestrator: Orchestrator, timeout: Optional[float]) -> None:
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.request_shutdown)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            pass

    try:
        if timeout is None:
            await orchestrator.run()
        else:
            try:
                await asyncio.wait_for(orchestrator.run(), timeout)
            except asyncio.TimeoutError:
                logger.warning("Time limit of %ss reached, shutting down", timeout)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await orchestrator.shutdown()


def run_topology(
    topology: Topology,
    timeout: Optional[float] = None,
    on_event=None,
) -> Orchestrator:
    """
    Run every unit until they all finish for good, SIGINT/SIGTERM arrives,
    or ``timeout`` seconds pass.

    Returns:
        The orchestrator, for status reporting
    """
    orchestrator = Orchestrator.from_topology(topology)
    if on_event is not None:
        orchestrator.on_event(on_event)
    asyncio.run(_run(orchestrator, timeout))
    return orchestrator


def exit_code_for(orchestrator: Orchestrator) -> int:
    """0 unless some unit failed for good."""
    return 1 if orchestrator.failed_units() else 0


def describe_event(event: UnitEvent) -> Optional[str]:
    if event.state is UnitState.WAITING:
        return None
    text = f"{event.unit}: {event.state.value}"
    if event.fault is not None:
        text += f" - {event.fault.message}"
    elif event.message:
        text += f" ({event.message})"
    return text
