"""
Unit runners - how a unit is actually started.

- ``ProcessRunner``   : spawns the unit's command as a subprocess
- ``ExtractorRunner`` : runs the unit's extraction in-process
- ``CallableRunner``  : runs an ``async def fn(unit, env) -> int``
- ``DefaultRunner``   : picks one of the above per unit

Every runner returns a :class:`UnitHandle` the orchestrator can wait on,
terminate and kill.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import Awaitable, Callable, Dict, Mapping, Optional

from .artifacts.envfile import read_env_file
from .artifacts.store import ArtifactStoreProtocol
from .extractor import Extractor
from .faults import ArtifactFault, UnitLaunchFault
from .units import ReadyProbe, Unit

logger = logging.getLogger("convoy.runners")

UnitCallable = Callable[[Unit, Dict[str, str]], Awaitable[int]]

TERMINATED = -int(signal.SIGTERM)


class UnitHandle:
    """A started unit."""

    name: str

    @property
    def returncode(self) -> Optional[int]:
        raise NotImplementedError

    async def wait(self) -> int:
        raise NotImplementedError

    def terminate(self) -> None:
        raise NotImplementedError

    def kill(self) -> None:
        raise NotImplementedError


class ProcessHandle(UnitHandle):
    """Handle over an asyncio subprocess."""

    def __init__(self, name: str, process: asyncio.subprocess.Process):
        self.name = name
        self.process = process

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    async def wait(self) -> int:
        return await self.process.wait()

    def terminate(self) -> None:
        if self.process.returncode is None:
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass

    def kill(self) -> None:
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass


class TaskHandle(UnitHandle):
    """Handle over an in-process coroutine; cancellation counts as SIGTERM."""

    def __init__(self, name: str, task: "asyncio.Task[int]"):
        self.name = name
        self.task = task

    @property
    def returncode(self) -> Optional[int]:
        if not self.task.done():
            return None
        if self.task.cancelled():
            return TERMINATED
        if self.task.exception() is not None:
            return 1
        return int(self.task.result())

    async def wait(self) -> int:
        try:
            return int(await asyncio.shield(self.task))
        except asyncio.CancelledError:
            if self.task.cancelled():
                return TERMINATED
            raise
        except Exception as e:
            logger.error("Unit %s raised: %s", self.name, e)
            return 1

    def terminate(self) -> None:
        self.task.cancel()

    def kill(self) -> None:
        self.task.cancel()


class UnitRunner:
    """Starts units."""

    async def start(self, unit: Unit) -> UnitHandle:
        raise NotImplementedError


class ProcessRunner(UnitRunner):
    """
    Spawns ``unit.command``.

    The environment is the orchestrator's own environment, then every
    ``env_file`` of the unit (read from the store at start time, after
    the gates opened), then the unit's explicit ``environment``.
    """

    def __init__(
        self,
        store: Optional[ArtifactStoreProtocol] = None,
        base_env: Optional[Mapping[str, str]] = None,
    ):
        self.store = store
        self.base_env = base_env

    def build_environment(self, unit: Unit) -> Dict[str, str]:
        env = dict(os.environ if self.base_env is None else self.base_env)
        for path in unit.env_files:
            if self.store is None:
                raise UnitLaunchFault(unit.name, f"env_file '{path}' needs an artifact store")
            try:
                values = read_env_file(self.store, path)
            except ArtifactFault as fault:
                raise UnitLaunchFault(unit.name, fault.message) from fault
            if values is None:
                raise UnitLaunchFault(unit.name, f"env_file '{self.store.locate(path)}' does not exist")
            env.update(values)
        env.update(unit.env)
        return env

    async def start(self, unit: Unit) -> UnitHandle:
        if unit.command is None:
            raise UnitLaunchFault(unit.name, "no command configured")

        env = self.build_environment(unit)
        try:
            if isinstance(unit.command, str):
                process = await asyncio.create_subprocess_shell(
                    unit.command, env=env, cwd=unit.workdir,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *unit.command, env=env, cwd=unit.workdir,
                )
        except OSError as exc:
            raise UnitLaunchFault(unit.name, exc.strerror or str(exc)) from exc

        logger.debug("Spawned %s (pid %s)", unit.name, process.pid)
        return ProcessHandle(unit.name, process)


class CallableRunner(UnitRunner):
    """Runs a coroutine function as the unit body."""

    def __init__(self, fn: UnitCallable, base_env: Optional[Mapping[str, str]] = None):
        self.fn = fn
        self.base_env = base_env

    async def start(self, unit: Unit) -> UnitHandle:
        env = dict(self.base_env or {})
        env.update(unit.env)
        task = asyncio.ensure_future(self.fn(unit, env))
        return TaskHandle(unit.name, task)


class ExtractorRunner(UnitRunner):
    """Runs ``unit.extract`` against the store in a worker thread."""

    def __init__(self, store: ArtifactStoreProtocol):
        self.store = store

    async def start(self, unit: Unit) -> UnitHandle:
        if unit.extract is None:
            raise UnitLaunchFault(unit.name, "no extraction configured")
        extractor = Extractor(self.store, unit.extract)

        async def body() -> int:
            report = await asyncio.to_thread(extractor.run)
            return report.exit_code

        return TaskHandle(unit.name, asyncio.ensure_future(body()))


class DefaultRunner(UnitRunner):
    """
    Extractor units run in-process, units with a registered callable run
    that callable, everything else is spawned as a process.
    """

    def __init__(
        self,
        store: Optional[ArtifactStoreProtocol] = None,
        callables: Optional[Dict[str, UnitCallable]] = None,
        base_env: Optional[Mapping[str, str]] = None,
    ):
        self.store = store
        self.callables = dict(callables or {})
        self.processes = ProcessRunner(store, base_env)
        self.extractors = ExtractorRunner(store) if store is not None else None

    def register(self, name: str, fn: UnitCallable) -> None:
        self.callables[name] = fn

    async def start(self, unit: Unit) -> UnitHandle:
        if unit.name in self.callables:
            return await CallableRunner(self.callables[unit.name], base_env=self.processes.base_env).start(unit)
        if unit.is_extractor:
            if self.extractors is None:
                raise UnitLaunchFault(unit.name, "extractor units need an artifact store")
            return await self.extractors.start(unit)
        return await self.processes.start(unit)


async def wait_ready(probe: ReadyProbe, handle: UnitHandle) -> bool:
    """
    Retry a TCP connect until it succeeds or the unit exits.

    Returns:
        True once the port accepts a connection, False if the unit
        exited first
    """
    while handle.returncode is None:
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(probe.host, probe.port), probe.interval,
            )
        except (OSError, asyncio.TimeoutError):
            await asyncio.sleep(probe.interval)
            continue
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        logger.debug("%s accepting connections on %s:%s", handle.name, probe.host, probe.port)
        return True
    return False
