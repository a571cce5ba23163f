"""
CLI utility helpers - output formatting and runtime wiring.
"""

from __future__ import annotations

import json
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from spindle.core.errors import SpindleError
from spindle.core.settings import SpindleSettings
from spindle.orchestration.exceptions import ExecutionError
from spindle.orchestration.health import HealthStatus, run_health
from spindle.orchestration.models import RunStatus, UnitState
from spindle.orchestration.scheduler import UnitScheduler
from spindle.runtime.context import ExecutionContextManager
from spindle.runtime.local_process import LocalProcessBackend

console = Console()
err_console = Console(stderr=True)

_STATE_STYLE = {
    UnitState.READY: "green",
    UnitState.SUCCEEDED: "green",
    UnitState.RUNNING: "yellow",
    UnitState.WAITING: "dim",
    UnitState.PENDING: "dim",
    UnitState.FAILED: "bold red",
    UnitState.CANCELLED: "magenta",
    UnitState.STOPPED: "blue",
}

_HEALTH_STYLE = {
    HealthStatus.HEALTHY: "green",
    HealthStatus.DEGRADED: "yellow",
    HealthStatus.UNHEALTHY: "bold red",
}


# ── Runtime wiring ───────────────────────────────────────────────────────


def build_scheduler(settings: SpindleSettings) -> UnitScheduler:
    """Local backend + context manager + scheduler from settings."""
    backend = LocalProcessBackend(
        inherit_env=settings.inherit_env,
        kill_timeout_seconds=settings.kill_timeout_seconds,
    )
    contexts = ExecutionContextManager(
        backend,
        work_dir=settings.work_dir,
        volumes_dir=settings.volumes_dir,
    )
    return UnitScheduler(
        backend,
        contexts,
        bootstrap_deadline_seconds=settings.bootstrap_deadline_seconds,
    )


# ── Output helpers ───────────────────────────────────────────────────────


def print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def print_waves(waves: list[list[str]], *, title: str = "") -> None:
    """Render the start waves of a graph."""
    table = Table(title=title or None, pad_edge=False)
    table.add_column("wave", justify="right")
    table.add_column("units", overflow="fold")
    for i, wave in enumerate(waves, start=1):
        table.add_row(str(i), ", ".join(wave))
    console.print(table)


def print_status(status: RunStatus, *, title: str = "") -> None:
    """Render a run snapshot with per-unit health."""
    report = run_health(status)
    table = Table(title=title or None, pad_edge=False)
    table.add_column("unit")
    table.add_column("kind")
    table.add_column("state")
    table.add_column("label")
    table.add_column("message", overflow="fold")
    for unit, check in zip(status.units, report.checks, strict=True):
        style = _STATE_STYLE.get(unit.state, "")
        table.add_row(
            unit.unit_id,
            unit.kind.value,
            f"[{style}]{unit.state.value}[/{style}]" if style else unit.state.value,
            unit.display_label or "",
            check.message,
        )
    console.print(table)
    style = _HEALTH_STYLE[report.status]
    console.print(
        f"run [cyan]{status.run_id}[/cyan] {status.phase.value}, "
        f"health [{style}]{report.status.value}[/{style}]"
    )


def print_failure(exc: BaseException) -> None:
    """Render an orchestration failure: failing unit id and captured stderr."""
    if isinstance(exc, SpindleError):
        unit_id = getattr(exc, "unit_id", None) or exc.context.unit_id
        prefix = f"[bold red]Unit {unit_id} failed[/bold red]" if unit_id else "[bold red]Error[/bold red]"
        err_console.print(f"{prefix} ({exc.category.value}): {exc.message}")
    else:
        err_console.print(f"[bold red]Error[/bold red]: {exc}")
    if isinstance(exc, ExecutionError) and exc.stderr:
        err_console.print("[dim]stderr:[/dim]")
        err_console.print(exc.stderr, markup=False, highlight=False)


def fail(exc: BaseException, code: int = 1) -> typer.Exit:
    """Print ``exc`` and return the Exit to raise."""
    print_failure(exc)
    return typer.Exit(code=code)
