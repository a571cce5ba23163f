"""Mock process backends - test doubles for orchestration scenarios.

``StubProcessBackend`` extends ``BaseProcessBackend`` and never starts a real
process. Each command is matched by its program name (``argv[0]``) against a
script describing how it behaves:

    ScriptedCommand(exit_code=0, delay=0.0, stdout="", stderr="",
                    exit_after=None)

- oneshots (``run``) sleep ``delay`` then return ``exit_code``
- daemons (``spawn``) stay alive until terminated, or exit with
  ``exit_code`` after ``exit_after`` seconds

Every call is recorded so tests can assert ordering and teardown.

Example::

    backend = StubProcessBackend({
        "migrate": ScriptedCommand(exit_code=1, stderr="relation exists"),
        "server": ScriptedCommand(),
    })
    scheduler = UnitScheduler(backend, ExecutionContextManager(backend, ...))
"""

from __future__ import annotations

import asyncio
import time
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


@dataclass
class ScriptedCommand:
    """How a stubbed program behaves."""

    exit_code: int = 0
    delay: float = 0.0
    stdout: str = ""
    stderr: str = ""
    exit_after: float | None = None
    missing: bool = False


@dataclass
class StubCall:
    """One recorded backend call."""

    op: str
    program: str
    context: str
    env: dict[str, str]
    at: float = field(default_factory=time.monotonic)


@dataclass
class _StubProcess:
    handle: ProcessHandle
    exited: asyncio.Event = field(default_factory=asyncio.Event)
    exit_code: int | None = None
    timer: asyncio.Task | None = None


class StubProcessBackend(BaseProcessBackend):
    """In-memory backend driven by ``ScriptedCommand`` entries."""

    def __init__(
        self,
        scripts: dict[str, ScriptedCommand] | None = None,
        *,
        default: ScriptedCommand | None = None,
    ) -> None:
        self.scripts = dict(scripts or {})
        self.default = default or ScriptedCommand()
        self.calls: list[StubCall] = []
        self.terminated: list[str] = []
        self._procs: dict[str, _StubProcess] = {}

    @property
    def name(self) -> str:
        return "stub"

    def script(self, program: str) -> ScriptedCommand:
        return self.scripts.get(program, self.default)

    def started(self, op: str | None = None) -> list[str]:
        """Programs started so far, in order (optionally filtered by op)."""
        return [c.program for c in self.calls if op is None or c.op == op]

    def running(self) -> list[str]:
        """Programs of spawned processes that have not exited."""
        return [p.handle.program for p in self._procs.values() if not p.exited.is_set()]

    def exit(self, program: str, exit_code: int = 1) -> None:
        """Make every running daemon of ``program`` exit now."""
        for proc in self._procs.values():
            if proc.handle.program == program and not proc.exited.is_set():
                self._finish(proc, exit_code)

    # ------------------------------------------------------------------

    async def _do_run(self, context: ExecutionContext, command: CommandSpec) -> ProcessResult:
        script = self._record("run", context, command)
        handle = ProcessHandle(
            ref=_generate_id("stub"), context_id=context.id, program=command.program,
        )
        context.attach(handle)
        try:
            if script.delay:
                await asyncio.sleep(script.delay)
        finally:
            context.detach(handle)
        return ProcessResult(script.exit_code, script.stdout, script.stderr)

    async def _do_spawn(self, context: ExecutionContext, command: CommandSpec) -> ProcessHandle:
        script = self._record("spawn", context, command)
        handle = ProcessHandle(
            ref=_generate_id("stub"), context_id=context.id, program=command.program,
        )
        proc = _StubProcess(handle=handle)
        if script.exit_after is not None:
            proc.timer = asyncio.create_task(self._exit_later(proc, script))
        self._procs[handle.ref] = proc
        return handle

    async def _do_probe(self, handle: ProcessHandle) -> ProbeResult:
        proc = self._procs.get(handle.ref)
        if proc is None:
            return ProbeResult.fatal(f"unknown process {handle.ref}")
        if proc.exited.is_set():
            return ProbeResult.fatal(f"process exited with code {proc.exit_code}")
        return ProbeResult.ready()

    async def _do_wait(self, handle: ProcessHandle) -> int:
        proc = self._procs[handle.ref]
        await proc.exited.wait()
        return proc.exit_code

    async def _do_terminate(self, handle: ProcessHandle) -> None:
        self.terminated.append(handle.program)
        proc = self._procs.get(handle.ref)
        if proc is not None and not proc.exited.is_set():
            self._finish(proc, -15)

    async def _do_health(self) -> BackendHealth:
        return BackendHealth(healthy=True, backend=self.name, message="stub")

    # ------------------------------------------------------------------

    def _record(self, op: str, context: ExecutionContext, command: CommandSpec) -> ScriptedCommand:
        script = self.script(command.program)
        if script.missing:
            raise BackendError(
                f"Command not found: {command.program}", exit_code=127, retryable=False,
            )
        self.calls.append(StubCall(op, command.program, context.name, dict(command.env)))
        return script

    async def _exit_later(self, proc: _StubProcess, script: ScriptedCommand) -> None:
        await asyncio.sleep(script.exit_after)
        self._finish(proc, script.exit_code)

    def _finish(self, proc: _StubProcess, exit_code: int) -> None:
        proc.exit_code = exit_code
        proc.exited.set()
        if proc.timer is not None and proc.timer is not asyncio.current_task():
            proc.timer.cancel()
