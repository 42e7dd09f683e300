"""Subprocess spawning with streamed output.

Processes are started in their own session so that the whole tree can be
killed with one signal to the process group.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, MutableSet, Protocol, Sequence

logger = logging.getLogger(__name__)

_READ_CHUNK_SIZE = 64 * 1024

KillFunction = Callable[[], None]
OutputCallback = Callable[[str], None]


class StreamReader(Protocol):
    async def read(self, n: int = -1) -> bytes: ...


class ManagedProcess(Protocol):
    pid: int
    returncode: int | None
    stdout: StreamReader | None
    stderr: StreamReader | None

    async def wait(self) -> int: ...

    def kill(self) -> None: ...


ProcessFactory = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class ProcessOutput:
    code: int | None
    stdout: str
    stderr: str
    duration: float


class LineBuffer:
    """Accumulates text chunks and hands out complete lines.

    Everything after the last newline stays buffered until a later chunk
    completes it.
    """

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, chunk: str) -> list[str]:
        self._pending += chunk
        index = self._pending.rfind("\n")
        if index < 0:
            return []
        complete = self._pending[:index]
        self._pending = self._pending[index + 1 :]
        return [line.rstrip("\r") for line in complete.split("\n")]

    def flush(self) -> list[str]:
        rest = self._pending.rstrip("\r")
        self._pending = ""
        return [rest] if rest else []

    @property
    def pending(self) -> str:
        return self._pending


def line_callback(on_line: Callable[[str], None]) -> tuple[OutputCallback, Callable[[], None]]:
    """Adapt a per-line handler into a chunk callback and a final flush."""
    buffer = LineBuffer()

    def on_chunk(chunk: str) -> None:
        for line in buffer.feed(chunk):
            on_line(line)

    def flush() -> None:
        for line in buffer.flush():
            on_line(line)

    return on_chunk, flush


def kill_process_tree(proc: ManagedProcess) -> None:
    """Send SIGKILL to the process group, falling back to the process itself."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
        return
    except (AttributeError, OSError) as exc:
        logger.warning("Failed to kill process tree of %s: %s.", proc.pid, exc)
    try:
        proc.kill()
    except ProcessLookupError:
        logger.warning("Failed to kill process %s.", proc.pid)


async def pump_stream(
    stream: StreamReader | None,
    callback: OutputCallback | None,
) -> str:
    if stream is None:
        return ""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    collected: list[str] = []
    while True:
        chunk = await stream.read(_READ_CHUNK_SIZE)
        final = not chunk
        text = decoder.decode(chunk, final=final)
        if text:
            collected.append(text)
            if callback is not None:
                callback(text)
        if final:
            return "".join(collected)


async def start_process(
    command: str,
    args: Sequence[str],
    *,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    process_factory: ProcessFactory = asyncio.create_subprocess_exec,
) -> ManagedProcess:
    logger.info('Start "%s %s"', command, " ".join(args))
    return await process_factory(
        command,
        *args,
        cwd=cwd,
        env=env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )


async def spawn(
    command: str,
    args: Sequence[str],
    *,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    on_stdout: OutputCallback | None = None,
    on_stderr: OutputCallback | None = None,
    destructors: MutableSet[KillFunction] | None = None,
    process_factory: ProcessFactory = asyncio.create_subprocess_exec,
    kill_tree: Callable[[ManagedProcess], None] = kill_process_tree,
) -> ProcessOutput:
    """Run a process to completion while streaming its output.

    A kill function is registered in ``destructors`` for as long as the
    process is alive. Killing is fire-and-forget; the caller keeps awaiting
    the exit of the process.
    """
    started = time.monotonic()
    proc = await start_process(
        command, args, cwd=cwd, env=env, process_factory=process_factory
    )

    def kill() -> None:
        kill_tree(proc)

    if destructors is not None:
        destructors.add(kill)
    try:
        stdout, stderr = await asyncio.gather(
            pump_stream(proc.stdout, on_stdout),
            pump_stream(proc.stderr, on_stderr),
        )
        code = await proc.wait()
    finally:
        if destructors is not None:
            destructors.discard(kill)
    duration = time.monotonic() - started
    logger.info('Process "%s" exited with code %s after %.1f s', command, code, duration)
    return ProcessOutput(code=code, stdout=stdout, stderr=stderr, duration=duration)
