"""Execution Context Manager - creates and destroys isolated contexts.

A context is a private root directory in which every mount of its
``ContextSpec`` has been materialised, plus the set of processes started in
it. ``destroy`` is the one guaranteed-cleanup hook of the orchestrator: it
is called on every teardown path (success, failure, cancellation,
supersession) and is idempotent.

Mount resolution:

    .. code-block:: text

        Mount(volume="main", subpath="conf", mountpoint="/etc/app")
            │
            ├── dependency is None → volumes_dir / "main"
            └── dependency = "db"  → DependencyStateProvider.volume_path("db", "main")
            │
            ▼  + subpath
        source = .../main/conf
            │
            ├── DIRECTORY: source must exist and be a directory
            └── FILE:      source's parent directory must exist
            │
            ▼
        context.root / "etc/app"  ──symlink──►  source

Any failure raises ``MountResolutionError`` and leaves nothing behind.
"""

from __future__ import annotations

import asyncio
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from spindle.core.logging import get_logger
from spindle.runtime._types import (
    ContextSpec,
    ExecutionContext,
    Mount,
    MountKind,
    MountResolutionError,
    ProcessBackend,
    ResolvedMount,
)

if TYPE_CHECKING:
    from spindle.orchestration.sources import DependencyStateProvider

logger = get_logger(__name__)


class ExecutionContextManager:
    """Creates contexts from specs and tears them down.

    Args:
        backend: Backend used to terminate processes attached to a context.
        work_dir: Parent directory of context roots (a temp dir if None).
        volumes_dir: Directory holding one sub-directory per named volume.
        dependencies: Provider of dependency-service volume paths.
    """

    def __init__(
        self,
        backend: ProcessBackend,
        *,
        work_dir: str | Path | None = None,
        volumes_dir: str | Path | None = None,
        dependencies: DependencyStateProvider | None = None,
    ) -> None:
        self._backend = backend
        self._work_dir = Path(work_dir) if work_dir else None
        self._volumes_dir = Path(volumes_dir) if volumes_dir else None
        self._dependencies = dependencies
        self._live: dict[str, ExecutionContext] = {}

    @property
    def backend(self) -> ProcessBackend:
        return self._backend

    @property
    def live(self) -> list[ExecutionContext]:
        """Contexts created and not yet destroyed."""
        return list(self._live.values())

    async def create(self, spec: ContextSpec) -> ExecutionContext:
        """Resolve mounts and return a context ready for command execution."""
        resolved = [self._resolve(spec.name, mount) for mount in spec.mounts]
        root = self._make_root(spec.name)
        context = ExecutionContext(name=spec.name, root=root)
        try:
            for mount, source in resolved:
                context.mounts.append(self._materialise(context, mount, source))
        except OSError as exc:
            shutil.rmtree(root, ignore_errors=True)
            raise MountResolutionError(spec.name, f"cannot materialise mounts: {exc}") from exc

        self._live[context.id] = context
        logger.info(
            "context.created",
            context=spec.name,
            context_id=context.id,
            root=str(root),
            mounts=len(context.mounts),
        )
        return context

    async def destroy(self, context: ExecutionContext) -> None:
        """Terminate every attached process group and release mounts. Idempotent."""
        if context.destroyed:
            return
        context.destroyed = True

        handles = list(context.handles.values())
        try:
            if handles:
                results = await asyncio.gather(
                    *(self._backend.terminate(h) for h in handles), return_exceptions=True,
                )
                for handle, result in zip(handles, results):
                    if isinstance(result, Exception):
                        logger.warning(
                            "context.terminate_failed",
                            context=context.name,
                            process=handle.ref,
                            error=str(result),
                        )
        finally:
            context.handles.clear()
            self._release(context)

        logger.info(
            "context.destroyed",
            context=context.name,
            context_id=context.id,
            processes=len(handles),
        )

    def _release(self, context: ExecutionContext) -> None:
        for mount in context.mounts:
            try:
                if mount.target.is_symlink():
                    mount.target.unlink()
            except OSError as exc:
                logger.warning("context.unmount_failed", target=str(mount.target), error=str(exc))
        shutil.rmtree(context.root, ignore_errors=True)

        self._live.pop(context.id, None)

    async def destroy_all(self) -> None:
        """Destroy every live context."""
        for context in list(self._live.values()):
            await self.destroy(context)

    # ------------------------------------------------------------------
    # Mount resolution
    # ------------------------------------------------------------------

    def _volume_path(self, context_name: str, mount: Mount) -> Path:
        if mount.dependency is not None:
            if self._dependencies is None:
                raise MountResolutionError(
                    context_name,
                    f"no dependency provider for volume {mount.source_label}",
                )
            path = self._dependencies.volume_path(mount.dependency, mount.volume)
            if path is None:
                raise MountResolutionError(
                    context_name,
                    f"dependency volume {mount.source_label} does not exist",
                ).with_context(service_id=mount.dependency)
            return Path(path)

        if self._volumes_dir is None:
            raise MountResolutionError(context_name, f"no volumes directory for {mount.volume}")
        path = self._volumes_dir / mount.volume
        if not path.is_dir():
            raise MountResolutionError(context_name, f"volume {mount.volume} does not exist")
        return path

    def _resolve(self, context_name: str, mount: Mount) -> tuple[Mount, Path]:
        base = self._volume_path(context_name, mount)
        source = base / mount.subpath.lstrip("/") if mount.subpath else base

        if mount.kind is MountKind.FILE:
            if not source.parent.is_dir():
                raise MountResolutionError(
                    context_name,
                    f"parent directory of file mount {mount.source_label} is missing",
                )
        elif not source.is_dir():
            raise MountResolutionError(
                context_name,
                f"mount source {mount.source_label} is not a directory",
            )
        return mount, source

    def _make_root(self, name: str) -> Path:
        if self._work_dir is not None:
            self._work_dir.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=f"{name}-", dir=self._work_dir))

    def _materialise(self, context: ExecutionContext, mount: Mount, source: Path) -> ResolvedMount:
        target = context.root / mount.mountpoint.lstrip("/")
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.is_symlink() or target.exists():
            target.unlink()
        target.symlink_to(source, target_is_directory=mount.kind is MountKind.DIRECTORY)
        return ResolvedMount(mount=mount, source=source, target=target)
