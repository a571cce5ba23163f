"""
Unit Scheduler / Executor - walks a dependency graph and runs its units.

One scheduler serves one service instance. Each ``start_run`` validates the
unit set (no side effects on failure), then drives a run in a background
task and returns a ``RunHandle``.

Scheduling loop:

    .. code-block:: text

        ┌──────────────────────────────────────────────────────────────┐
        │ frontier = units whose requires are all Succeeded / Ready    │
        │   └─ launch every frontier unit concurrently (one task each) │
        │        ├─ await its context (created lazily, shared by name) │
        │        ├─ RUNNING                                            │
        │        ├─ oneshot: backend.run  → SUCCEEDED | FAILED         │
        │        └─ daemon:  backend.spawn → poll probe → READY|FAILED │
        │ wait for the first unit task to finish                       │
        │   ├─ success → recompute frontier                            │
        │   └─ failure → FAILED, every not-yet-started transitive      │
        │                dependent FAILED (DependencyFailedError)      │
        └──────────────────────────────────────────────────────────────┘

Run modes:

- CONTINUOUS: once the walk is over the run keeps supervising. Ready
  daemons stay up until ``stop()``. A daemon that exits on its own is
  marked FAILED (degraded health) and is not restarted.
- BOOTSTRAP: the whole walk runs under one wall-clock deadline. The first
  failure aborts the run. Success, failure and deadline all end with every
  context destroyed, Ready daemons included.

Every teardown path (success, failure, deadline, stop, cancellation) goes
through ``_teardown``, which destroys each context the run created.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from spindle.core.errors import BackendError, ConfigError, SpindleError
from spindle.core.logging import LogContext
from spindle.orchestration.exceptions import (
    BootstrapDeadlineExceeded,
    DaemonExitedError,
    DependencyFailedError,
    ExecutionError,
    ProbeDeadlineExceeded,
    ProbeFatalError,
    RunStateError,
)
from spindle.orchestration.health import HealthReport, run_health
from spindle.orchestration.models import (
    RunMode,
    RunPhase,
    RunPlan,
    RunResult,
    RunStatus,
    Transition,
    Unit,
    UnitState,
    UnitStatus,
)
from spindle.orchestration.resolver import DependencyGraph
from spindle.runtime._types import (
    CommandSpec,
    ContextSpec,
    ExecutionContext,
    ProbeResult,
    ProcessBackend,
    ProcessHandle,
    _generate_id,
)
from spindle.runtime.context import ExecutionContextManager
from spindle.runtime.probes import ProbeScope, poll

logger = structlog.get_logger()

ContextSpecs = Mapping[str, ContextSpec] | Iterable[ContextSpec]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _error_dict(exc: BaseException, unit_id: str) -> dict[str, Any]:
    if isinstance(exc, SpindleError):
        d = exc.to_dict()
    else:
        d = {"error_type": type(exc).__name__, "message": str(exc)}
    d["unit_id"] = unit_id
    return d


@dataclass
class _UnitRecord:
    """Mutable per-run state of one unit."""

    unit: Unit
    state: UnitState = UnitState.PENDING
    probe_message: str | None = None
    probe_attempts: int = 0
    exit_code: int | None = None
    error: dict[str, Any] | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    handle: ProcessHandle | None = None

    def snapshot(self) -> UnitStatus:
        return UnitStatus(
            unit_id=self.unit.id,
            kind=self.unit.kind,
            state=self.state,
            display_label=self.unit.display_label,
            probe_message=self.probe_message,
            exit_code=self.exit_code,
            error=self.error,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )


class RunHandle:
    """
    A run in progress.

    Returned by ``UnitScheduler.start_run``; the run itself is driven by a
    background task owned by the handle.

    Example:
        handle = await scheduler.start_run(units, RunMode.CONTINUOUS)
        await handle.settled()          # walk finished, daemons supervised
        print(handle.status().states)
        await handle.stop()             # tear everything down
    """

    def __init__(
        self,
        *,
        graph: DependencyGraph,
        mode: RunMode,
        deadline: float | None,
        backend: ProcessBackend,
        contexts: ExecutionContextManager,
        context_specs: dict[str, ContextSpec],
    ):
        self.run_id = _generate_id("run")
        self.mode = mode
        self.deadline = deadline
        self.graph = graph
        self.started_at = _utcnow()

        self._backend = backend
        self._contexts = contexts
        self._context_specs = context_specs
        self._records = {u.id: _UnitRecord(unit=u) for u in graph.units}
        self._transitions: list[Transition] = []
        self._phase = RunPhase.RUNNING
        self._failure: BaseException | None = None

        self._launched: set[str] = set()
        self._inflight: dict[asyncio.Task, str] = {}
        self._watchers: dict[str, asyncio.Task] = {}
        self._context_tasks: dict[str, asyncio.Future] = {}
        self._live_contexts: list[ExecutionContext] = []

        self._wake = asyncio.Event()
        self._stop_requested = asyncio.Event()
        self._settled = asyncio.Event()
        self._tearing_down = False
        self._started_monotonic = time.monotonic()
        self._task: asyncio.Task[RunResult] | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def phase(self) -> RunPhase:
        return self._phase

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def failure(self) -> BaseException | None:
        """First unit failure (or deadline) of this run."""
        return self._failure

    @property
    def transitions(self) -> list[Transition]:
        """State changes in the order they happened."""
        return list(self._transitions)

    @property
    def contexts(self) -> list[ExecutionContext]:
        """Contexts created by this run (destroyed ones included)."""
        return list(self._live_contexts)

    def status(self) -> RunStatus:
        """Per-unit snapshot, in declaration order."""
        return RunStatus(
            run_id=self.run_id,
            mode=self.mode,
            phase=self._phase,
            units=[self._records[uid].snapshot() for uid in self.graph.unit_ids],
            started_at=self.started_at,
        )

    def health(self) -> HealthReport:
        return run_health(self.status())

    async def settled(self) -> RunStatus:
        """Wait until the walk is over (continuous) or the run has ended."""
        await self._settled.wait()
        return self.status()

    async def wait(self) -> RunResult:
        """Wait for the run to end. A continuous run only ends on ``stop()``."""
        if self._task is None:
            raise RunStateError(f"Run {self.run_id} was never started")
        return await asyncio.shield(self._task)

    async def stop(self) -> RunResult:
        """Request teardown and wait for it. Idempotent."""
        if not self._stop_requested.is_set():
            logger.info("scheduler.stop_requested", run_id=self.run_id, phase=self._phase.value)
            self._stop_requested.set()
            self._wake.set()
        return await self.wait()

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def _start(self) -> None:
        self._task = asyncio.create_task(self._drive(), name=f"spindle-{self.run_id}")

    async def _drive(self) -> RunResult:
        async with LogContext(run_id=self.run_id):
            logger.info(
                "scheduler.run_started",
                mode=self.mode.value,
                unit_count=len(self.graph),
                deadline=self.deadline,
            )
            try:
                if self.mode is RunMode.BOOTSTRAP:
                    await self._walk_with_deadline()
                else:
                    await self._walk()
                    if not self._stop_requested.is_set():
                        self._phase = RunPhase.SUPERVISING
                        self._settled.set()
                        logger.info(
                            "scheduler.run_supervising",
                            ready=[uid for uid, r in self._records.items() if r.state is UnitState.READY],
                            failed=[uid for uid, r in self._records.items() if r.state is UnitState.FAILED],
                        )
                        await self._stop_requested.wait()
            finally:
                await self._teardown(self._final_phase())

            result = RunResult(
                run_id=self.run_id,
                mode=self.mode,
                succeeded=self._succeeded(),
                status=self.status(),
                failure=self._failure,
                elapsed_seconds=time.monotonic() - self._started_monotonic,
            )
            logger.info(
                "scheduler.run_finished",
                phase=self._phase.value,
                succeeded=result.succeeded,
                failed_unit=result.failed_unit,
                elapsed_seconds=round(result.elapsed_seconds, 3),
            )
            return result

    async def _walk_with_deadline(self) -> None:
        timeout = asyncio.timeout(self.deadline)
        try:
            async with timeout:
                await self._walk()
        except TimeoutError:
            if not timeout.expired():
                raise
            pending = [uid for uid, r in self._records.items() if not r.state.is_success]
            probing = [
                f"{uid}: {r.probe_message}"
                for uid, r in self._records.items()
                if r.state is UnitState.RUNNING and r.probe_message
            ]
            exc = BootstrapDeadlineExceeded(
                self.deadline, pending, detail="; ".join(probing) or None,
            )
            exc.with_context(run_id=self.run_id)
            logger.error("scheduler.deadline_exceeded", deadline=self.deadline, pending=pending)
            if self._failure is None:
                self._failure = exc

    async def _walk(self) -> None:
        for unit in self.graph.units:
            if unit.requires:
                self._set_state(unit.id, UnitState.WAITING)

        while True:
            if self._stop_requested.is_set():
                return
            if self.mode is RunMode.BOOTSTRAP and self._failure is not None:
                return

            self._launch_frontier()
            if not self._inflight:
                return

            self._wake.clear()
            waker = asyncio.ensure_future(self._wake.wait())
            try:
                done, _ = await asyncio.wait(
                    {*self._inflight, waker}, return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                waker.cancel()

            for task in done:
                if task is waker:
                    continue
                unit_id = self._inflight.pop(task)
                self._settle(unit_id, task)

    def _launch_frontier(self) -> None:
        satisfied = [uid for uid, r in self._records.items() if r.state.is_success]
        out_of_play = self._launched | {
            uid for uid, r in self._records.items() if r.state.is_terminal
        }
        for unit in self.graph.frontier(satisfied, out_of_play):
            self._launched.add(unit.id)
            task = asyncio.create_task(self._execute(unit), name=f"{self.run_id}:{unit.id}")
            self._inflight[task] = unit.id

    def _settle(self, unit_id: str, task: asyncio.Task) -> None:
        record = self._records[unit_id]
        if task.cancelled():
            if not record.state.is_terminal:
                self._set_state(unit_id, UnitState.CANCELLED)
            return
        exc = task.exception()
        if exc is not None:
            self._fail(unit_id, exc)
            return
        if record.unit.is_daemon and record.handle is not None and not self._tearing_down:
            self._watchers[unit_id] = asyncio.create_task(
                self._watch_daemon(unit_id, record.handle),
                name=f"{self.run_id}:{unit_id}:watch",
            )

    def _fail(self, unit_id: str, exc: BaseException) -> None:
        record = self._records[unit_id]
        record.error = _error_dict(exc, unit_id)
        if isinstance(exc, (ExecutionError, DaemonExitedError)):
            record.exit_code = exc.exit_code
        self._set_state(unit_id, UnitState.FAILED)

        if isinstance(exc, SpindleError):
            logger.warning("scheduler.unit_failed", unit_id=unit_id, error=str(exc))
        else:
            logger.error("scheduler.unit_crashed", unit_id=unit_id, exc_info=exc)

        if self._failure is None:
            if isinstance(exc, SpindleError):
                exc.with_context(run_id=self.run_id)
                if exc.context.unit_id is None:
                    exc.with_context(unit_id=unit_id)
            self._failure = exc

        for dep_id in self.graph.dependents(unit_id):
            dep = self._records[dep_id]
            if dep_id in self._launched or dep.state.is_terminal:
                continue
            dep_exc = DependencyFailedError(dep_id, unit_id)
            dep.error = dep_exc.to_dict()
            self._set_state(dep_id, UnitState.FAILED)
            logger.info("scheduler.unit_skipped", unit_id=dep_id, failed_dependency=unit_id)

    def _set_state(self, unit_id: str, state: UnitState) -> None:
        record = self._records[unit_id]
        record.state = state
        now = _utcnow()
        if state is UnitState.RUNNING:
            record.started_at = now
        elif state.is_terminal and record.finished_at is None:
            record.finished_at = now
        self._transitions.append(Transition(len(self._transitions) + 1, unit_id, state, now))
        logger.debug("scheduler.unit_state", unit_id=unit_id, state=state.value)

    # ------------------------------------------------------------------
    # Unit execution
    # ------------------------------------------------------------------

    async def _execute(self, unit: Unit) -> None:
        async with LogContext(unit_id=unit.id):
            context = await self._context_for(unit.context)
            command = CommandSpec(unit.command.argv, {**unit.command.env, "SPINDLE_UNIT": unit.id})
            self._set_state(unit.id, UnitState.RUNNING)
            logger.info("scheduler.unit_started", kind=unit.kind.value, context=context.name)
            if unit.is_daemon:
                await self._start_daemon(unit, context, command)
            else:
                await self._run_oneshot(unit, context, command)

    async def _run_oneshot(self, unit: Unit, context: ExecutionContext, command: CommandSpec) -> None:
        try:
            result = await self._backend.run(context, command)
        except BackendError as exc:
            code = exc.exit_code if exc.exit_code is not None else -1
            raise ExecutionError(unit.id, code, str(exc), cause=exc) from exc

        record = self._records[unit.id]
        record.exit_code = result.exit_code
        if not result.succeeded:
            raise ExecutionError(unit.id, result.exit_code, result.stderr.strip())
        self._set_state(unit.id, UnitState.SUCCEEDED)
        logger.info("scheduler.unit_succeeded")

    async def _start_daemon(self, unit: Unit, context: ExecutionContext, command: CommandSpec) -> None:
        try:
            handle = await self._backend.spawn(context, command)
        except BackendError as exc:
            code = exc.exit_code if exc.exit_code is not None else -1
            raise ExecutionError(unit.id, code, str(exc), cause=exc) from exc

        record = self._records[unit.id]
        record.handle = handle
        result = await self._await_ready(unit, context, handle)

        if result.is_fatal:
            raise ProbeFatalError(unit.id, result.reason or "fatal")
        if not result.is_ready:
            raise ProbeDeadlineExceeded(unit.id, result.reason or "not ready", record.probe_attempts)

        record.probe_message = result.reason or "ready"
        self._set_state(unit.id, UnitState.READY)
        logger.info("scheduler.unit_ready", attempts=record.probe_attempts, label=unit.display_label)

    async def _await_ready(
        self, unit: Unit, context: ExecutionContext, handle: ProcessHandle,
    ) -> ProbeResult:
        # Liveness comes first: an exited daemon is never ready.
        if unit.probe is None:
            return await self._backend.probe(handle)

        record = self._records[unit.id]
        scope = ProbeScope(unit.id, context, self._backend, handle)
        probe = unit.probe

        async def check() -> ProbeResult:
            alive = await self._backend.probe(handle)
            if alive.is_fatal:
                return alive
            return await probe.check(scope)

        def on_attempt(attempt: int, result: ProbeResult) -> None:
            record.probe_attempts = attempt
            record.probe_message = result.reason or result.status.value
            logger.debug("scheduler.probe_attempt", attempt=attempt, result=str(result))

        return await poll(check, probe.policy, on_attempt=on_attempt)

    async def _watch_daemon(self, unit_id: str, handle: ProcessHandle) -> None:
        exit_code = await self._backend.wait(handle)
        if self._tearing_down:
            return
        logger.warning("scheduler.daemon_exited", unit_id=unit_id, exit_code=exit_code)
        self._fail(unit_id, DaemonExitedError(unit_id, exit_code))
        self._wake.set()

    # ------------------------------------------------------------------
    # Contexts
    # ------------------------------------------------------------------

    async def _context_for(self, name: str) -> ExecutionContext:
        future = self._context_tasks.get(name)
        if future is None:
            spec = self._context_specs.get(name) or ContextSpec(name)
            future = asyncio.ensure_future(self._create_context(spec))
            self._context_tasks[name] = future
        # Shared by every unit of the context; one cancelled unit must not abort creation.
        return await asyncio.shield(future)

    async def _create_context(self, spec: ContextSpec) -> ExecutionContext:
        context = await self._contexts.create(spec)
        self._live_contexts.append(context)
        return context

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _final_phase(self) -> RunPhase:
        if self._stop_requested.is_set() or self.mode is RunMode.CONTINUOUS:
            return RunPhase.STOPPED
        if self._failure is not None or any(not r.state.is_success for r in self._records.values()):
            return RunPhase.FAILED
        return RunPhase.SUCCEEDED

    def _succeeded(self) -> bool:
        if self.mode is RunMode.BOOTSTRAP:
            return self._phase is RunPhase.SUCCEEDED
        return self._failure is None

    async def _teardown(self, phase: RunPhase) -> None:
        self._tearing_down = True

        tasks = [*self._inflight, *self._watchers.values()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for task, unit_id in list(self._inflight.items()):
            self._settle(unit_id, task)
        self._inflight.clear()
        self._watchers.clear()

        if self._context_tasks:
            await asyncio.gather(*self._context_tasks.values(), return_exceptions=True)
        for context in reversed(self._live_contexts):
            try:
                await self._contexts.destroy(context)
            except Exception:
                logger.exception("scheduler.context_destroy_failed", context=context.name)

        for uid, record in self._records.items():
            if record.state is UnitState.READY:
                self._set_state(uid, UnitState.STOPPED)
            elif not record.state.is_terminal:
                self._set_state(uid, UnitState.CANCELLED)

        self._phase = phase
        self._settled.set()


class UnitScheduler:
    """
    Starts runs of a unit set on one backend.

    Args:
        backend: Process execution backend shared by every run
        contexts: Context manager used to create and destroy contexts
        bootstrap_deadline_seconds: Deadline used when a bootstrap run is
            started without one

    Example:
        backend = LocalProcessBackend()
        scheduler = UnitScheduler(backend, ExecutionContextManager(backend))
        result = await scheduler.run_until_success(units, deadline=120)
    """

    def __init__(
        self,
        backend: ProcessBackend,
        contexts: ExecutionContextManager,
        *,
        bootstrap_deadline_seconds: float = 120.0,
    ):
        self.backend = backend
        self.contexts = contexts
        self.bootstrap_deadline_seconds = bootstrap_deadline_seconds
        self._runs: list[RunHandle] = []

    @property
    def active_runs(self) -> list[RunHandle]:
        return [r for r in self._runs if not r.done]

    async def start_run(
        self,
        units: Sequence[Unit],
        mode: RunMode = RunMode.CONTINUOUS,
        deadline: float | None = None,
        contexts: ContextSpecs | None = None,
    ) -> RunHandle:
        """
        Validate ``units`` and start driving them.

        Raises:
            GraphError: Duplicate ids, unknown requires or a cycle. Nothing
                has been started when this is raised.
            ConfigError: Invalid deadline for the mode
        """
        graph = DependencyGraph(units)

        if mode is RunMode.CONTINUOUS and deadline is not None:
            raise ConfigError("A deadline only applies to bootstrap runs")
        if mode is RunMode.BOOTSTRAP:
            deadline = self.bootstrap_deadline_seconds if deadline is None else deadline
            if deadline <= 0:
                raise ConfigError(f"Bootstrap deadline must be positive, got {deadline}")

        handle = RunHandle(
            graph=graph,
            mode=mode,
            deadline=deadline,
            backend=self.backend,
            contexts=self.contexts,
            context_specs=self._index_contexts(contexts),
        )
        self._runs = [r for r in self._runs if not r.done]
        self._runs.append(handle)
        handle._start()
        return handle

    async def start_plan(self, plan: RunPlan, mode: RunMode = RunMode.CONTINUOUS,
                         deadline: float | None = None) -> RunHandle:
        return await self.start_run(plan.units, mode, deadline, plan.contexts)

    async def run_until_success(
        self,
        units: Sequence[Unit],
        deadline: float | None = None,
        contexts: ContextSpecs | None = None,
    ) -> RunResult:
        """
        Run every unit in bootstrap mode and tear everything down.

        Returns:
            The successful RunResult

        Raises:
            The first unit failure, MountResolutionError, or
            BootstrapDeadlineExceeded, after every context has been destroyed
        """
        handle = await self.start_run(units, RunMode.BOOTSTRAP, deadline, contexts)
        result = await handle.wait()
        if result.succeeded:
            return result
        if result.failure is not None:
            raise result.failure
        raise RunStateError(f"Bootstrap run {handle.run_id} stopped before completion")

    async def stop_all(self) -> None:
        for run in self.active_runs:
            await run.stop()

    @staticmethod
    def _index_contexts(contexts: ContextSpecs | None) -> dict[str, ContextSpec]:
        if contexts is None:
            return {}
        specs = contexts.values() if isinstance(contexts, Mapping) else contexts
        return {spec.name: spec for spec in specs}
