"""Local process backend - runs units as local subprocesses.

A ``ProcessBackend`` that executes commands as local OS processes, each in
its own session so that the whole process group can be signalled when the
owning context is destroyed.

Architecture:

    .. code-block:: text

        LocalProcessBackend
        ┌──────────────────────────────────────────────────────────────┐
        │                                                              │
        │  CommandSpec field           │ Local process equivalent      │
        │  ────────────────────────────┼───────────────────────────────│
        │  argv                        │ subprocess argv               │
        │  env                         │ os.environ overlay            │
        │  context.root                │ subprocess cwd                │
        │  context.name / root         │ SPINDLE_CONTEXT[_ROOT] env    │
        │                              │                               │
        │  run()   → stdout/stderr captured, returned on exit          │
        │  spawn() → stdout/stderr pumped line-by-line to the log,     │
        │            last lines kept for diagnostics (tail())          │
        │  terminate() → SIGTERM to the group, SIGKILL after grace     │
        └──────────────────────────────────────────────────────────────┘

Mounts are materialised by the context manager as links under the context
root; the local backend cannot enforce read-only mounts.

Example:
    >>> backend = LocalProcessBackend(kill_timeout_seconds=2.0)
    >>> result = await backend.run(ctx, CommandSpec(["python", "-c", "print(1)"]))
    >>> result.stdout
    '1\\n'
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections import deque
from dataclasses import dataclass, field

from spindle.core.errors import BackendError
from spindle.runtime._base import BaseProcessBackend
from spindle.runtime._types import (
    BackendHealth,
    CommandSpec,
    ExecutionContext,
    ProbeResult,
    ProcessHandle,
    ProcessResult,
    _generate_id,
)

logger = logging.getLogger(__name__)
output_logger = logging.getLogger("spindle.process")


@dataclass
class _LocalProcess:
    """Tracks a subprocess started by the backend."""

    handle: ProcessHandle
    process: asyncio.subprocess.Process
    tail: deque[str] = field(default_factory=lambda: deque(maxlen=200))
    pumps: list[asyncio.Task] = field(default_factory=list)
    terminated: bool = False


class LocalProcessBackend(BaseProcessBackend):
    """Runs commands as local OS subprocesses.

    Args:
        inherit_env: If True, children inherit the supervisor environment
            with ``command.env`` overlaid. If False, only ``command.env``
            and the ``SPINDLE_*`` markers are passed.
        kill_timeout_seconds: Seconds to wait after SIGTERM before
            sending SIGKILL.
    """

    def __init__(
        self,
        *,
        inherit_env: bool = True,
        kill_timeout_seconds: float = 5.0,
    ) -> None:
        self._inherit_env = inherit_env
        self._kill_timeout = kill_timeout_seconds
        self._procs: dict[str, _LocalProcess] = {}

    @property
    def name(self) -> str:
        return "local"

    def tail(self, handle: ProcessHandle, lines: int = 20) -> list[str]:
        """Last output lines of a spawned process, until it is terminated."""
        proc = self._procs.get(handle.ref)
        if proc is None:
            return []
        return list(proc.tail)[-lines:]

    # ------------------------------------------------------------------
    # Core lifecycle
    # ------------------------------------------------------------------

    async def _do_run(self, context: ExecutionContext, command: CommandSpec) -> ProcessResult:
        process = await self._start(context, command)
        proc = self._track(context, command, process)
        context.attach(proc.handle)
        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            await self._kill_group(proc)
            raise
        finally:
            context.detach(proc.handle)
            self._procs.pop(proc.handle.ref, None)

        return ProcessResult(
            exit_code=process.returncode,
            stdout=stdout.decode(errors="replace") if stdout else "",
            stderr=stderr.decode(errors="replace") if stderr else "",
        )

    async def _do_spawn(self, context: ExecutionContext, command: CommandSpec) -> ProcessHandle:
        process = await self._start(context, command)
        proc = self._track(context, command, process)
        proc.pumps = [
            asyncio.create_task(self._pump(proc, process.stdout, logging.INFO)),
            asyncio.create_task(self._pump(proc, process.stderr, logging.WARNING)),
        ]
        return proc.handle

    async def _do_probe(self, handle: ProcessHandle) -> ProbeResult:
        proc = self._procs.get(handle.ref)
        if proc is None:
            return ProbeResult.fatal(f"unknown process {handle.ref}")
        code = proc.process.returncode
        if code is None:
            return ProbeResult.ready(f"pid {handle.pid} running")
        return ProbeResult.fatal(f"process exited with code {code}")

    async def _do_wait(self, handle: ProcessHandle) -> int:
        proc = self._procs.get(handle.ref)
        if proc is None:
            raise BackendError(f"Unknown process {handle.ref}", retryable=False)
        code = await proc.process.wait()
        if proc.pumps:
            await asyncio.gather(*proc.pumps, return_exceptions=True)
        return code

    async def _do_terminate(self, handle: ProcessHandle) -> None:
        proc = self._procs.get(handle.ref)
        if proc is None:
            return
        try:
            await self._kill_group(proc)
        finally:
            self._procs.pop(handle.ref, None)
        if proc.pumps:
            _, pending = await asyncio.wait(proc.pumps, timeout=self._kill_timeout)
            for pump in pending:
                pump.cancel()

    async def _do_health(self) -> BackendHealth:
        return BackendHealth(
            healthy=True,
            backend=self.name,
            message=f"{len(self._procs)} tracked processes",
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _start(
        self, context: ExecutionContext, command: CommandSpec
    ) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *command.argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                env=self._build_env(context, command),
                cwd=str(context.root),
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise BackendError(
                f"Command not found: {command.program}",
                exit_code=127,
                retryable=False,
                cause=exc,
            ).with_context(context_name=context.name) from exc

    def _track(
        self,
        context: ExecutionContext,
        command: CommandSpec,
        process: asyncio.subprocess.Process,
    ) -> _LocalProcess:
        handle = ProcessHandle(
            ref=_generate_id("local"),
            context_id=context.id,
            program=command.program,
            pid=process.pid,
        )
        proc = _LocalProcess(handle=handle, process=process)
        self._procs[handle.ref] = proc
        return proc

    def _build_env(self, context: ExecutionContext, command: CommandSpec) -> dict[str, str]:
        env = dict(os.environ) if self._inherit_env else {}
        env.update(command.env)
        env["SPINDLE_CONTEXT"] = context.name
        env["SPINDLE_CONTEXT_ROOT"] = str(context.root)
        return env

    async def _pump(
        self,
        proc: _LocalProcess,
        stream: asyncio.StreamReader | None,
        level: int,
    ) -> None:
        """Forward a daemon's output to the log, keeping the last lines."""
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode(errors="replace").rstrip("\n")
            proc.tail.append(text)
            output_logger.log(level, "[%s] %s", proc.handle.program, text)

    async def _kill_group(self, proc: _LocalProcess) -> None:
        """SIGTERM the process group, SIGKILL after the grace period."""
        if proc.terminated:
            return
        proc.terminated = True
        pgid = proc.process.pid
        try:
            os.killpg(pgid, signal.SIGTERM)
        except ProcessLookupError:
            return
        if proc.process.returncode is not None:
            return
        try:
            await asyncio.wait_for(proc.process.wait(), timeout=self._kill_timeout)
        except TimeoutError:
            logger.warning(
                "Process %s (pid %s) ignored SIGTERM for %.1fs, killing",
                proc.handle.ref, pgid, self._kill_timeout,
            )
            try:
                os.killpg(pgid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await proc.process.wait()
