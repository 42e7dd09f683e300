"""Supervision of long-lived background server processes."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Sequence

from prusti_bridge.config import BridgeConfig, PrustiLocation, verifier_env
from prusti_bridge.exceptions import ServerError
from prusti_bridge.invariants import require_not_none
from prusti_bridge.process import (
    ManagedProcess,
    ProcessFactory,
    StreamReader,
    kill_process_tree,
    line_callback,
    pump_stream,
    start_process,
)
from prusti_bridge.state_machine import StateMachine

logger = logging.getLogger(__name__)


class ServerState(str, Enum):
    # A process that is running and has not yet been marked as ready.
    RUNNING = "Running"
    # A running process that has been marked as ready.
    READY = "Ready"
    # A process that never started, or that has been explicitly stopped.
    STOPPED = "Stopped"
    # A process that terminated without being explicitly stopped.
    CRASHED = "Crashed"


_LIVE_STATES = (ServerState.RUNNING, ServerState.READY)


@dataclass(frozen=True)
class StartOptions:
    cwd: str | None = None
    env: dict[str, str] | None = None
    on_stdout_line: Callable[[str], None] | None = None
    on_stderr_line: Callable[[str], None] | None = None


async def _pump_lines(stream: StreamReader | None, on_line: Callable[[str], None] | None) -> None:
    if on_line is None:
        await pump_stream(stream, None)
        return
    on_chunk, flush = line_callback(on_line)
    await pump_stream(stream, on_chunk)
    flush()


class ServerManager:
    """Lifecycle of one server process, tracked as a :class:`ServerState`.

    ``stop`` is fire-and-forget: the kill signal is sent but the exit of the
    process is not awaited before the state becomes ``Stopped``.
    """

    def __init__(
        self,
        name: str,
        *,
        process_factory: ProcessFactory = asyncio.create_subprocess_exec,
        kill_tree: Callable[[ManagedProcess], None] = kill_process_tree,
    ) -> None:
        self.name = name
        self._process_factory = process_factory
        self._kill_tree = kill_tree
        self._state = StateMachine(
            f"{name} state",
            ServerState.STOPPED.value,
            [state.value for state in ServerState],
        )
        self._proc: ManagedProcess | None = None
        self._tasks: list[asyncio.Task[None]] = []

    def _log(self, message: str, *args: object, level: int = logging.INFO) -> None:
        logger.log(level, f"[{self.name}] {message}", *args)

    @property
    def state(self) -> ServerState:
        return ServerState(self._state.get_state())

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    def _is_state(self, *states: ServerState) -> bool:
        return self.state in states

    def _set_state(self, new_state: ServerState) -> None:
        self._log('Mark server as "%s".', new_state.value)
        if new_state in _LIVE_STATES and self._proc is None:
            raise ServerError(
                self.name, f"State will become {new_state.value}, but proc is undefined."
            )
        if new_state not in _LIVE_STATES and self._proc is not None:
            raise ServerError(
                self.name, f"State will become {new_state.value}, but proc is defined."
            )
        self._state.set_state(new_state.value)

    async def start(
        self,
        command: str,
        args: Sequence[str] = (),
        options: StartOptions | None = None,
    ) -> None:
        """Start the server process, stopping any previously running one."""
        if self._is_state(*_LIVE_STATES):
            self.stop()
        options = options or StartOptions()
        proc = await start_process(
            command,
            args,
            cwd=options.cwd,
            env=options.env,
            process_factory=self._process_factory,
        )
        self._proc = proc
        self._tasks = [
            asyncio.create_task(_pump_lines(proc.stdout, options.on_stdout_line)),
            asyncio.create_task(_pump_lines(proc.stderr, options.on_stderr_line)),
            asyncio.create_task(self._watch_exit(proc)),
        ]
        self._set_state(ServerState.RUNNING)

    async def _watch_exit(self, proc: ManagedProcess) -> None:
        code = await proc.wait()
        if self._proc is not proc:
            return
        self._log(
            "Server process unexpectedly terminated with exit code %s", code,
            level=logging.WARNING,
        )
        self._proc = None
        self._set_state(ServerState.CRASHED)

    def _detach(self) -> None:
        for task in self._tasks:
            if not task.done() and not task.get_loop().is_closed():
                task.cancel()
        self._tasks = []

    def stop(self) -> None:
        """Stop the server process; the state becomes ``Stopped``."""
        if self._is_state(*_LIVE_STATES) and self._proc is not None:
            proc = self._proc
            self._log("Kill server process %s.", proc.pid)
            self._detach()
            self._kill_tree(proc)
        self._proc = None
        self._set_state(ServerState.STOPPED)

    def set_ready(self) -> None:
        """Mark the server as ``Ready``, unless it is ``Stopped`` or ``Crashed``."""
        if self._is_state(ServerState.STOPPED, ServerState.CRASHED):
            return
        self._set_state(ServerState.READY)

    # Only one pending waiter per state is supported; a newer one replaces it.

    def wait_for_running(self) -> asyncio.Future[None]:
        return self._state.wait_for_state(ServerState.RUNNING.value)

    def wait_for_ready(self) -> asyncio.Future[None]:
        return self._state.wait_for_state(ServerState.READY.value)

    def wait_for_stopped(self) -> asyncio.Future[None]:
        return self._state.wait_for_state(ServerState.STOPPED.value)

    def wait_for_crashed(self) -> asyncio.Future[None]:
        return self._state.wait_for_state(ServerState.CRASHED.value)

    def dispose(self) -> None:
        self.stop()
        self._state.cancel_waiters()


_PORT_RE = re.compile(r"port: (\d+)")


class PrustiServer:
    """The verification server shared by all verifier invocations.

    It is started on a free port and reports the chosen port on stdout; the
    server is ready once that line has been seen. Concurrent callers of
    :meth:`ensure_ready` share one startup.
    """

    def __init__(self, manager: ServerManager | None = None) -> None:
        self.manager = manager or ServerManager("Prusti Server")
        self._address: str | None = None
        self._startup: asyncio.Future[str] | None = None

    @property
    def address(self) -> str | None:
        # A port reported by a process that has since exited is useless.
        if self.manager.state is not ServerState.READY:
            return None
        return self._address

    def _on_stdout_line(self, line: str) -> None:
        logger.debug("[%s] %s", self.manager.name, line)
        match = _PORT_RE.search(line)
        if match is None:
            return
        self._address = f"localhost:{match.group(1)}"
        self.manager.set_ready()

    def _on_stderr_line(self, line: str) -> None:
        logger.debug("[%s] %s", self.manager.name, line)

    async def start(self, location: PrustiLocation, config: BridgeConfig) -> None:
        self._address = None
        await self.manager.start(
            location.prusti_server,
            ["--port", "0"],
            StartOptions(
                env=verifier_env(config),
                on_stdout_line=self._on_stdout_line,
                on_stderr_line=self._on_stderr_line,
            ),
        )

    async def wait_until_ready(self) -> str:
        """Wait for the port line; raises ``ServerError`` if the server dies first."""
        if self.manager.state is ServerState.CRASHED:
            raise ServerError(self.manager.name, "Server terminated before becoming ready.")
        if self.manager.state is not ServerState.READY:
            ready = self.manager.wait_for_ready()
            crashed = self.manager.wait_for_crashed()
            try:
                await asyncio.wait({ready, crashed}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in (ready, crashed):
                    if not waiter.done():
                        waiter.cancel()
            if ready.cancelled() or not ready.done():
                raise ServerError(self.manager.name, "Server terminated before becoming ready.")
        return require_not_none(self.address, reason="ready server without address")

    async def _start_and_wait(self, location: PrustiLocation, config: BridgeConfig) -> str:
        await self.start(location, config)
        return await self.wait_until_ready()

    async def ensure_ready(self, location: PrustiLocation, config: BridgeConfig) -> str:
        """Return the address of a ready server, (re)starting it when needed."""
        address = self.address
        if address is not None:
            return address
        if self._startup is None or self._startup.done():
            self._startup = asyncio.ensure_future(self._start_and_wait(location, config))
        # One caller giving up must not cancel the startup for the others.
        return await asyncio.shield(self._startup)

    def stop(self) -> None:
        self._address = None
        startup = self._startup
        if startup is not None and not startup.done() and not startup.get_loop().is_closed():
            startup.cancel()
        self._startup = None
        self.manager.stop()
