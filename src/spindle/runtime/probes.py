"""Readiness Probe Engine.

Turns an arbitrary async check into a binary ready/not-ready signal with a
deadline. The engine knows nothing about daemons: the scheduler hands it a
zero-argument check and a ``ProbePolicy`` and waits for the verdict.

Polling model:

    .. code-block:: text

        t=0      t=i      t=2i     t=3i     ...      deadline
        │        │        │        │                   │
        └─sleep──┤attempt─┤attempt─┤attempt── ... ─────┤
                 │        │        │
                 ▼        ▼        ▼
              READY → return READY
              FATAL → return FATAL (no further attempts)
              NOT_READY / exception → sleep, retry
              next attempt would start past the deadline
                    → return NOT_READY("deadline exceeded ...")

The first attempt happens one interval after polling starts, which gives a
freshly spawned process time to bind its sockets.

Probe factories (``tcp_probe``, ``http_probe``, ``command_probe``) build the
checks used by manifests. They receive a ``ProbeScope`` describing the
daemon under test.

Example:
    >>> probe = ReadinessProbe(tcp_probe("127.0.0.1", 8332), ProbePolicy(1.0, 10.0))
    >>> result = await poll(lambda: probe.check(scope), probe.policy)
    >>> result.is_ready
    True
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

import httpx

from spindle.core.errors import ConfigError
from spindle.core.logging import get_logger
from spindle.runtime._types import (
    CommandSpec,
    ExecutionContext,
    ProbeResult,
    ProcessBackend,
    ProcessHandle,
)

logger = get_logger(__name__)

ProbeFn = Callable[[], Awaitable[ProbeResult]]


@dataclass(frozen=True)
class ProbePolicy:
    """Poll interval and deadline, both in seconds."""

    interval_seconds: float = 1.0
    deadline_seconds: float = 10.0

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ConfigError(f"Probe interval must be positive, got {self.interval_seconds}")
        if self.deadline_seconds <= 0:
            raise ConfigError(f"Probe deadline must be positive, got {self.deadline_seconds}")


@dataclass(frozen=True)
class ProbeScope:
    """What a readiness check may look at: the daemon and where it runs."""

    unit_id: str
    context: ExecutionContext
    backend: ProcessBackend
    handle: ProcessHandle


@dataclass(frozen=True)
class ReadinessProbe:
    """A daemon's readiness check plus its polling policy."""

    check: Callable[[ProbeScope], Awaitable[ProbeResult]]
    policy: ProbePolicy = field(default_factory=ProbePolicy)
    description: str = ""


async def poll(
    probe_fn: ProbeFn,
    policy: ProbePolicy,
    *,
    on_attempt: Callable[[int, ProbeResult], None] | None = None,
) -> ProbeResult:
    """Poll ``probe_fn`` until READY, FATAL or the deadline elapses.

    Args:
        probe_fn: Idempotent, side-effect-light check.
        policy: Interval and deadline.
        on_attempt: Called after every attempt with (attempt number, result),
            e.g. to surface the current probe message in status views.

    Returns:
        READY or FATAL as returned by the check, or NOT_READY with a
        deadline-exceeded reason.
    """
    start = time.monotonic()
    deadline = start + policy.deadline_seconds
    attempt = 0
    last: ProbeResult | None = None

    while True:
        remaining = deadline - time.monotonic()
        if attempt and remaining <= 0:
            break
        await asyncio.sleep(min(policy.interval_seconds, max(remaining, 0)))

        attempt += 1
        remaining = max(deadline - time.monotonic(), 0.001)
        try:
            result = await asyncio.wait_for(probe_fn(), timeout=remaining)
        except TimeoutError:
            result = ProbeResult.not_ready("probe attempt timed out")
        except Exception as exc:
            result = ProbeResult.not_ready(f"{type(exc).__name__}: {exc}")

        last = result
        if on_attempt is not None:
            on_attempt(attempt, result)
        if result.is_ready or result.is_fatal:
            return result

    reason = f"deadline of {policy.deadline_seconds:g}s exceeded after {attempt} attempts"
    if last is not None and last.reason:
        reason = f"{reason}: {last.reason}"
    return ProbeResult.not_ready(reason)


# ---------------------------------------------------------------------------
# Probe factories
# ---------------------------------------------------------------------------

def tcp_probe(host: str, port: int, *, timeout: float = 2.0) -> Callable[[ProbeScope], Awaitable[ProbeResult]]:
    """Ready once a TCP listener accepts connections on ``host:port``."""

    async def check(scope: ProbeScope) -> ProbeResult:
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
        except (OSError, TimeoutError) as exc:
            return ProbeResult.not_ready(f"{host}:{port} not accepting connections ({exc})")
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return ProbeResult.ready(f"listening on {host}:{port}")

    return check


def http_probe(
    url: str,
    *,
    timeout: float = 3.0,
    fatal_statuses: Sequence[int] = (),
) -> Callable[[ProbeScope], Awaitable[ProbeResult]]:
    """Ready once ``GET url`` answers with a 2xx status."""

    async def check(scope: ProbeScope) -> ProbeResult:
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.get(url)
        except httpx.HTTPError as exc:
            return ProbeResult.not_ready(f"{url}: {exc}")
        if resp.is_success:
            return ProbeResult.ready(f"{url} answered {resp.status_code}")
        if resp.status_code in fatal_statuses:
            return ProbeResult.fatal(f"{url} answered {resp.status_code}")
        return ProbeResult.not_ready(f"{url} answered {resp.status_code}")

    return check


def command_probe(
    argv: Sequence[str],
    env: dict[str, str] | None = None,
) -> Callable[[ProbeScope], Awaitable[ProbeResult]]:
    """Ready once ``argv``, run inside the daemon's context, exits 0."""
    command = CommandSpec(tuple(argv), env or {})

    async def check(scope: ProbeScope) -> ProbeResult:
        result = await scope.backend.run(scope.context, command)
        if result.succeeded:
            return ProbeResult.ready(result.stdout.strip()[-200:] or None)
        message = (result.stderr or result.stdout).strip()[-200:]
        return ProbeResult.not_ready(message or f"{command.program} exited with {result.exit_code}")

    return check
