"""
Reactive Binding Layer - rebuilds the run when watched values change.

A ``ReactiveSupervisor`` wraps a graph-building function and a list of
``ReactiveBinding``s. It keeps exactly one Continuous run alive and
replaces it whenever a binding's *projected* value changes.

Rebuild protocol:

    .. code-block:: text

        source change ──► projected value == last_observed ? ──yes──► ignore
                                     │ no
                                     ▼
                          last_observed = value, mark dirty
                                     │
                          sleep(coalesce window)        ◄── further changes
                                     │                      fold in here
                                     ▼
                          values == values of current run ? ──yes──► skip
                                     │ no
                                     ▼
                          stop current run (destroy its contexts)
                                     │
                          build(values) ─► start new Continuous run

Build failures are logged and kept in ``last_error``; the supervisor
keeps listening and recovers on the next change.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import structlog

from spindle.orchestration.exceptions import RunStateError
from spindle.orchestration.models import RunMode, RunPlan
from spindle.orchestration.scheduler import RunHandle, UnitScheduler
from spindle.orchestration.sources import Projection, identity

logger = structlog.get_logger()

BuildFn = Callable[[dict[str, Any]], RunPlan | Awaitable[RunPlan]]


class BindableSource(Protocol):
    """Anything that can be read through a projection and subscribed to."""

    def read(self, projection: Projection = ...) -> Any: ...

    def subscribe(self, projection: Projection, callback: Callable[[Any], None]) -> Callable[[], None]: ...


@dataclass
class ReactiveBinding:
    """A watched projection of an external source.

    Example:
        ReactiveBinding("rpc_password", store, field_path("rpc.password"))
    """

    name: str
    source: BindableSource
    projection: Projection = identity
    last_observed: Any = None

    def evaluate(self) -> Any:
        return self.source.read(self.projection)


class ReactiveSupervisor:
    """
    Keeps one Continuous run in sync with a set of bindings.

    Args:
        scheduler: Scheduler used to start each run
        bindings: Watched values; names must be unique
        build: ``values -> RunPlan`` (sync or async), called with the
            current value of every binding keyed by name
        coalesce_seconds: Window in which changes fold into one rebuild
    """

    def __init__(
        self,
        scheduler: UnitScheduler,
        bindings: Sequence[ReactiveBinding],
        build: BuildFn,
        *,
        coalesce_seconds: float = 0.25,
    ):
        names = [b.name for b in bindings]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise RunStateError(f"Duplicate binding names: {', '.join(duplicates)}")

        self._scheduler = scheduler
        self._bindings = list(bindings)
        self._build = build
        self._coalesce = coalesce_seconds

        self._loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribers: list[Callable[[], None]] = []
        self._current: RunHandle | None = None
        self._applied: dict[str, Any] | None = None
        self._pending: set[str] = set()
        self._dirty = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._task: asyncio.Task | None = None
        self._rebuild_count = 0
        self._last_error: BaseException | None = None
        self._started = False
        self._stopped = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def current_run(self) -> RunHandle | None:
        return self._current

    @property
    def rebuild_count(self) -> int:
        """Rebuilds performed since ``start()`` (the first run is not one)."""
        return self._rebuild_count

    @property
    def last_error(self) -> BaseException | None:
        return self._last_error

    @property
    def values(self) -> dict[str, Any] | None:
        """Binding values the current run was built from."""
        return dict(self._applied) if self._applied is not None else None

    @property
    def bindings(self) -> list[ReactiveBinding]:
        return list(self._bindings)

    async def start(self) -> RunHandle:
        """Subscribe, build the first plan and start its run.

        Raises:
            RunStateError: Already started, or stopped
            GraphError / ConfigError: The first plan is invalid; nothing
                stays subscribed in that case
        """
        if self._stopped:
            raise RunStateError("Reactive supervisor has been stopped")
        if self._started:
            raise RunStateError("Reactive supervisor already started")
        self._started = True
        self._loop = asyncio.get_running_loop()

        for binding in self._bindings:
            self._unsubscribers.append(
                binding.source.subscribe(binding.projection, self._notifier(binding))
            )

        try:
            values = self._evaluate()
            plan = await self._call_build(values)
            self._current = await self._scheduler.start_plan(plan, RunMode.CONTINUOUS)
        except Exception:
            self._unsubscribe()
            self._started = False
            raise

        self._applied = values
        self._task = asyncio.create_task(self._rebuild_loop(), name="spindle-reactive")
        logger.info(
            "reactive.started",
            bindings=[b.name for b in self._bindings],
            run_id=self._current.run_id,
        )
        return self._current

    async def stop(self) -> None:
        """Unsubscribe and tear down the current run. Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        self._unsubscribe()
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        if self._current is not None:
            await self._current.stop()
        self._idle.set()
        logger.info("reactive.stopped", rebuilds=self._rebuild_count)

    async def idle(self) -> None:
        """Wait until no change is pending and no rebuild is in progress."""
        await self._idle.wait()

    # ------------------------------------------------------------------
    # Change handling
    # ------------------------------------------------------------------

    def _notifier(self, binding: ReactiveBinding) -> Callable[[Any], None]:
        def notify(value: Any) -> None:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is self._loop:
                self._on_change(binding, value)
            elif self._loop is not None:
                self._loop.call_soon_threadsafe(self._on_change, binding, value)

        return notify

    def _on_change(self, binding: ReactiveBinding, value: Any) -> None:
        if self._stopped:
            return
        if value == binding.last_observed:
            logger.debug("reactive.change_suppressed", binding=binding.name)
            return
        binding.last_observed = value
        self._pending.add(binding.name)
        self._idle.clear()
        self._dirty.set()
        logger.debug("reactive.change", binding=binding.name)

    async def _rebuild_loop(self) -> None:
        while True:
            await self._dirty.wait()
            await asyncio.sleep(self._coalesce)
            self._dirty.clear()
            changed = sorted(self._pending)
            self._pending.clear()
            try:
                await self._rebuild(changed)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._last_error = exc
                logger.error("reactive.rebuild_failed", changed=changed, exc_info=True)
            if not self._dirty.is_set():
                self._idle.set()

    async def _rebuild(self, changed: list[str]) -> None:
        values = self._evaluate()
        if values == self._applied:
            logger.info("reactive.rebuild_skipped", changed=changed)
            return

        self._rebuild_count += 1
        old = self._current
        logger.info(
            "reactive.rebuild",
            changed=changed,
            rebuild=self._rebuild_count,
            old_run_id=old.run_id if old is not None else None,
        )
        if old is not None:
            await old.stop()
        self._current = None
        self._applied = None

        plan = await self._call_build(values)
        self._current = await self._scheduler.start_plan(plan, RunMode.CONTINUOUS)
        self._applied = values
        self._last_error = None

    # ------------------------------------------------------------------

    def _evaluate(self) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for binding in self._bindings:
            value = binding.evaluate()
            binding.last_observed = value
            values[binding.name] = value
        return values

    async def _call_build(self, values: dict[str, Any]) -> RunPlan:
        plan = self._build(dict(values))
        if inspect.isawaitable(plan):
            plan = await plan
        return plan

    def _unsubscribe(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
