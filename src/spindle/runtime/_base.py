"""Base process backend with shared lifecycle logic.

Provides ``BaseProcessBackend``: logging, error wrapping, context attachment
and health latency timing shared by every backend.

Architecture:

    .. code-block:: text

        ProcessBackend (Protocol)
              │
              ▼
        BaseProcessBackend
        ├── run()       → destroyed-context guard + error wrapping → _do_run()
        ├── spawn()     → guard + attach handle to context         → _do_spawn()
        ├── probe()     → _do_probe()
        ├── wait()      → _do_wait()
        ├── terminate() → logging + detach + non-fatal             → _do_terminate()
        └── health()    → latency timing                           → _do_health()
              │
        ┌─────┴───────────────────────┐
        ▼                             ▼
    LocalProcessBackend         StubProcessBackend
    (asyncio subprocesses)      (scripted, for tests)

Subclasses attach the handle of a *running oneshot* themselves (inside
``_do_run``) and detach it when the process exits, so that a context torn
down mid-run terminates it too.
"""

from __future__ import annotations

import logging
import time

from spindle.core.errors import BackendError
from spindle.runtime._types import (
    BackendHealth,
    CommandSpec,
    ExecutionContext,
    ProbeResult,
    ProcessHandle,
    ProcessResult,
)

logger = logging.getLogger(__name__)


class BaseProcessBackend:
    """Base class for process backends.

    Subclasses MUST implement:
        _do_run, _do_spawn, _do_probe, _do_wait, _do_terminate

    Subclasses MAY override:
        _do_health (default: healthy)

    .. code-block:: text

        spawn(ctx, cmd)
          ├── reject destroyed context
          ├── log: "Spawning 'X' in context ctx-1 on local"
          ├── _do_spawn(ctx, cmd)  ← subclass implements
          ├── ctx.attach(handle)
          └── on error: wrap in BackendError

        terminate(handle)
          ├── _do_terminate(handle)  ← subclass implements
          └── on error: log warning, never raise
    """

    @property
    def name(self) -> str:
        """Unique name for this backend."""
        raise NotImplementedError

    async def run(self, context: ExecutionContext, command: CommandSpec) -> ProcessResult:
        """Run a process to completion."""
        self._ensure_usable(context, command)
        logger.debug("Running '%s' in context %s on %s", command.program, context.id, self.name)
        try:
            result = await self._do_run(context, command)
        except BackendError:
            raise
        except OSError as exc:
            raise BackendError(
                f"Failed to run '{command.program}': {exc}",
                cause=exc,
            ).with_context(context_name=context.name) from exc
        logger.debug(
            "'%s' in context %s exited with %s",
            command.program, context.id, result.exit_code,
        )
        return result

    async def spawn(self, context: ExecutionContext, command: CommandSpec) -> ProcessHandle:
        """Start a long-running process and attach it to ``context``."""
        self._ensure_usable(context, command)
        logger.info("Spawning '%s' in context %s on %s", command.program, context.id, self.name)
        try:
            handle = await self._do_spawn(context, command)
        except BackendError:
            raise
        except OSError as exc:
            raise BackendError(
                f"Failed to spawn '{command.program}': {exc}",
                cause=exc,
            ).with_context(context_name=context.name) from exc
        context.attach(handle)
        logger.info("Spawned '%s': ref=%s pid=%s", command.program, handle.ref, handle.pid)
        return handle

    async def probe(self, handle: ProcessHandle) -> ProbeResult:
        """Liveness of a spawned process."""
        return await self._do_probe(handle)

    async def wait(self, handle: ProcessHandle) -> int:
        """Wait for a spawned process to exit."""
        return await self._do_wait(handle)

    async def terminate(self, handle: ProcessHandle) -> None:
        """Terminate a process group. Idempotent and non-fatal."""
        logger.debug("Terminating %s on %s", handle.ref, self.name)
        try:
            await self._do_terminate(handle)
        except Exception as exc:
            logger.warning("Terminate failed for %s: %s (non-fatal)", handle.ref, exc)

    async def health(self) -> BackendHealth:
        """Health check with latency timing."""
        start = time.monotonic()
        try:
            result = await self._do_health()
            return BackendHealth(
                healthy=result.healthy,
                backend=self.name,
                message=result.message,
                latency_ms=(time.monotonic() - start) * 1000,
            )
        except Exception as exc:
            return BackendHealth(
                healthy=False,
                backend=self.name,
                message=f"Health check failed: {exc}",
                latency_ms=(time.monotonic() - start) * 1000,
            )

    def _ensure_usable(self, context: ExecutionContext, command: CommandSpec) -> None:
        if context.destroyed:
            raise BackendError(
                f"Context '{context.name}' ({context.id}) has been destroyed",
                retryable=False,
            ).with_context(context_name=context.name)
        if not command.argv:
            raise BackendError(
                "No command specified",
                retryable=False,
            ).with_context(context_name=context.name)

    # --- Abstract methods for subclasses ---

    async def _do_run(self, context: ExecutionContext, command: CommandSpec) -> ProcessResult:
        raise NotImplementedError

    async def _do_spawn(self, context: ExecutionContext, command: CommandSpec) -> ProcessHandle:
        raise NotImplementedError

    async def _do_probe(self, handle: ProcessHandle) -> ProbeResult:
        raise NotImplementedError

    async def _do_wait(self, handle: ProcessHandle) -> int:
        raise NotImplementedError

    async def _do_terminate(self, handle: ProcessHandle) -> None:
        raise NotImplementedError

    async def _do_health(self) -> BackendHealth:
        return BackendHealth(healthy=True, backend=self.name)
