"""
Root Typer application for the spindle CLI.

Commands:

    spindle validate MANIFEST            check the graph, print start waves
    spindle bootstrap MANIFEST           run once to completion, tear down
    spindle run MANIFEST                 supervise, rebuild on config change
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from typer import Typer

from spindle.cli.utils import (
    build_scheduler,
    console,
    fail,
    print_json,
    print_status,
    print_waves,
)
from spindle.core.errors import SpindleError
from spindle.core.logging import configure_logging
from spindle.core.settings import get_settings
from spindle.orchestration.manifest import ServiceManifest
from spindle.orchestration.reactive import ReactiveSupervisor
from spindle.orchestration.sources import ConfigurationStore, FileConfigurationStore

app = Typer(
    name="spindle",
    help="Dependency-ordered, health-gated service runtime.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from spindle import __version__

        typer.echo(f"spindle {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Validate, bootstrap and supervise service manifests."""


# ── Helpers ──────────────────────────────────────────────────────────────


def _load(manifest: Path) -> ServiceManifest:
    try:
        loaded = ServiceManifest.from_yaml_file(manifest)
        loaded.graph()
    except SpindleError as exc:
        raise fail(exc, code=2) from exc
    return loaded


def _store(config: Path | None) -> ConfigurationStore:
    if config is None:
        return ConfigurationStore()
    try:
        return FileConfigurationStore(config)
    except (OSError, ValueError, SpindleError) as exc:
        raise fail(exc, code=2) from exc


def _setup_logging() -> None:
    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_json)


# ── Commands ─────────────────────────────────────────────────────────────


@app.command("validate")
def validate(
    manifest: Path = typer.Argument(..., help="Service manifest (YAML)."),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Validate a manifest and show the order units would start in."""
    _setup_logging()
    loaded = _load(manifest)
    waves = loaded.graph().waves()
    if json_out:
        print_json({"name": loaded.name, "valid": True, "waves": waves})
        return
    print_waves(waves, title=f"{loaded.name}: start waves")
    console.print(f"[green]OK[/green] {len(loaded.units)} units, {len(waves)} waves")


@app.command("bootstrap")
def bootstrap(
    manifest: Path = typer.Argument(..., help="Service manifest (YAML)."),
    deadline: float | None = typer.Option(
        None, "--deadline", "-t", help="Wall-clock deadline in seconds.",
    ),
    config: Path | None = typer.Option(
        None, "--config", "-c", help="Configuration file (JSON or YAML).",
    ),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Run every unit once to success, then tear everything down."""
    _setup_logging()
    loaded = _load(manifest)
    store = _store(config)
    values = {b.name: b.evaluate() for b in loaded.bindings(store)}

    scheduler = build_scheduler(get_settings())
    try:
        plan = loaded.to_plan(values)
        result = asyncio.run(
            scheduler.run_until_success(plan.units, deadline, plan.contexts)
        )
    except SpindleError as exc:
        raise fail(exc) from exc

    if json_out:
        print_json(result.to_dict())
        return
    print_status(result.status, title=f"{loaded.name}: bootstrap")
    console.print(f"[green]Bootstrap succeeded[/green] in {result.elapsed_seconds:.2f}s")


@app.command("run")
def run(
    manifest: Path = typer.Argument(..., help="Service manifest (YAML)."),
    config: Path | None = typer.Option(
        None, "--config", "-c", help="Configuration file (JSON or YAML), watched for changes.",
    ),
) -> None:
    """Supervise the manifest; rebuild when watched configuration changes."""
    _setup_logging()
    loaded = _load(manifest)
    store = _store(config)
    try:
        asyncio.run(_supervise(loaded, store))
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")
    except SpindleError as exc:
        raise fail(exc) from exc


async def _supervise(manifest: ServiceManifest, store: ConfigurationStore) -> None:
    settings = get_settings()
    supervisor = ReactiveSupervisor(
        build_scheduler(settings),
        manifest.bindings(store),
        manifest.to_plan,
        coalesce_seconds=settings.rebuild_coalesce_seconds,
    )
    watcher = None
    if isinstance(store, FileConfigurationStore):
        watcher = asyncio.create_task(store.watch(settings.config_poll_seconds))

    handle = await supervisor.start()
    try:
        print_status(await handle.settled(), title=f"{manifest.name}: running")
        while True:
            await asyncio.sleep(3600)
    finally:
        if watcher is not None:
            watcher.cancel()
        await supervisor.stop()
