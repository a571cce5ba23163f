"""Pydantic models for service manifests.

A manifest declares a service's execution contexts, its units and the
configuration paths that should trigger a rebuild when they change.

Usage::

    from spindle.orchestration.manifest import ServiceManifest

    manifest = ServiceManifest.from_yaml_file("service.yaml")
    plan = manifest.to_plan({"rpc_password": "hunter2"})
    bindings = manifest.bindings(store)

Example YAML::

    name: bitcoind
    contexts:
      main:
        mounts:
          - volume: main
            mountpoint: /data
    units:
      - id: bitcoind
        kind: daemon
        command: ["bitcoind", "-datadir=data", "-rpcpassword={rpc_password}"]
        display_label: RPC Interface
        probe:
          tcp: {host: 127.0.0.1, port: 8332}
          interval_seconds: 1
          deadline_seconds: 30
      - id: wallet-init
        command: ["bitcoin-cli", "createwallet", "default"]
        requires: [bitcoind]
    watch:
      rpc_password: rpc.password

``{name}`` placeholders in commands, environment values and probe fields
are filled from the binding values (``{{`` and ``}}`` for literal braces).
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from spindle.core.errors import ConfigError
from spindle.core.settings import get_settings
from spindle.orchestration.models import RunPlan, Unit, UnitKind
from spindle.orchestration.reactive import ReactiveBinding
from spindle.orchestration.resolver import DependencyGraph
from spindle.orchestration.sources import ConfigurationStore, field_path
from spindle.runtime._types import CommandSpec, ContextSpec, Mount, MountKind
from spindle.runtime.probes import (
    ProbePolicy,
    ReadinessProbe,
    command_probe,
    http_probe,
    tcp_probe,
)


def _render(template: str, values: Mapping[str, Any]) -> str:
    try:
        return template.format_map(values)
    except KeyError as e:
        raise ConfigError(f"Unknown placeholder {e} in {template!r}") from e
    except (ValueError, IndexError) as e:
        raise ConfigError(f"Malformed template {template!r}: {e}") from e


class MountSpec(BaseModel):
    """One mount of a context."""

    model_config = ConfigDict(extra="forbid")

    volume: str = Field(..., min_length=1)
    mountpoint: str = Field(..., min_length=1)
    subpath: str | None = None
    read_only: bool = False
    kind: MountKind = MountKind.DIRECTORY
    dependency: str | None = Field(default=None, description="Service exporting the volume")

    def to_mount(self) -> Mount:
        return Mount(
            volume=self.volume,
            mountpoint=self.mountpoint,
            subpath=self.subpath,
            read_only=self.read_only,
            kind=self.kind,
            dependency=self.dependency,
        )


class ContextSpecModel(BaseModel):
    """A named execution context."""

    model_config = ConfigDict(extra="forbid")

    mounts: list[MountSpec] = Field(default_factory=list)


class TcpProbeSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    host: str = "127.0.0.1"
    port: int | str


class HttpProbeSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str
    fatal_statuses: list[int] = Field(default_factory=list)


class ProbeSpec(BaseModel):
    """Readiness probe of a daemon: exactly one of tcp, http or command."""

    model_config = ConfigDict(extra="forbid")

    tcp: TcpProbeSpec | None = None
    http: HttpProbeSpec | None = None
    command: list[str] | None = None
    interval_seconds: float | None = Field(default=None, gt=0, description="Defaults to SPINDLE_PROBE_INTERVAL_SECONDS")
    deadline_seconds: float | None = Field(default=None, gt=0, description="Defaults to SPINDLE_PROBE_DEADLINE_SECONDS")

    @model_validator(mode="after")
    def _exactly_one_check(self) -> ProbeSpec:
        chosen = [k for k in ("tcp", "http", "command") if getattr(self, k) is not None]
        if len(chosen) != 1:
            raise ValueError("probe needs exactly one of: tcp, http, command")
        return self

    def to_probe(self, values: Mapping[str, Any]) -> ReadinessProbe:
        """Build the runtime probe, rendering placeholders from ``values``."""
        settings = get_settings()
        policy = ProbePolicy(
            self.interval_seconds or settings.probe_interval_seconds,
            self.deadline_seconds or settings.probe_deadline_seconds,
        )
        if self.tcp is not None:
            host = _render(self.tcp.host, values)
            port = _render(str(self.tcp.port), values)
            try:
                port_number = int(port)
            except ValueError as e:
                raise ConfigError(f"TCP probe port must be an integer, got {port!r}") from e
            return ReadinessProbe(tcp_probe(host, port_number), policy, f"tcp {host}:{port_number}")
        if self.http is not None:
            url = _render(self.http.url, values)
            return ReadinessProbe(
                http_probe(url, fatal_statuses=self.http.fatal_statuses), policy, f"http {url}",
            )
        argv = [_render(a, values) for a in self.command or []]
        return ReadinessProbe(command_probe(argv), policy, "command " + " ".join(argv))


class UnitSpec(BaseModel):
    """A oneshot or daemon unit."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1)
    kind: Literal["oneshot", "daemon"] = "oneshot"
    context: str = "main"
    command: list[str] = Field(..., min_length=1)
    env: dict[str, str] = Field(default_factory=dict)
    requires: list[str] = Field(default_factory=list)
    display_label: str | None = None
    probe: ProbeSpec | None = None

    @model_validator(mode="after")
    def _daemon_only_fields(self) -> UnitSpec:
        if self.kind == "oneshot" and (self.probe is not None or self.display_label):
            raise ValueError(f"unit '{self.id}': probe and display_label are for daemons only")
        return self

    def to_unit(self, values: Mapping[str, Any] | None) -> Unit:
        """Build the runtime unit. ``values=None`` leaves templates unrendered
        and omits the probe (graph checks only)."""
        if values is None:
            argv, env, probe = list(self.command), dict(self.env), None
        else:
            argv = [_render(a, values) for a in self.command]
            env = {k: _render(v, values) for k, v in self.env.items()}
            probe = self.probe.to_probe(values) if self.probe is not None else None
        return Unit(
            id=self.id,
            kind=UnitKind(self.kind),
            command=CommandSpec(tuple(argv), env),
            context=self.context,
            requires=frozenset(self.requires),
            probe=probe,
            display_label=self.display_label,
        )


class ServiceManifest(BaseModel):
    """Top-level manifest: contexts, units and watched configuration."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    contexts: dict[str, ContextSpecModel] = Field(default_factory=dict)
    units: list[UnitSpec] = Field(..., min_length=1)
    watch: dict[str, str] = Field(
        default_factory=dict,
        description="Binding name -> dotted configuration path",
    )

    @classmethod
    def from_yaml(cls, yaml_content: str) -> ServiceManifest:
        """Parse and validate YAML content.

        Parameters
        ----------
        yaml_content
            Raw YAML string.

        Raises
        ------
        ConfigError
            If the YAML is invalid or does not match the schema.
        """
        import yaml

        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}") from e

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid manifest: {e}") from e

    @classmethod
    def from_yaml_file(cls, path: str | Path) -> ServiceManifest:
        """Load and validate from a YAML file."""
        try:
            content = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Cannot read manifest {path}: {e}") from e
        return cls.from_yaml(content)

    def context_specs(self) -> dict[str, ContextSpec]:
        return {
            name: ContextSpec(name, tuple(m.to_mount() for m in ctx.mounts))
            for name, ctx in self.contexts.items()
        }

    def graph(self) -> DependencyGraph:
        """Validate the requires graph without rendering any template.

        Raises
        ------
        GraphError
            Duplicate unit ids, unknown requires, or a cycle.
        """
        return DependencyGraph([u.to_unit(None) for u in self.units])

    def to_plan(self, values: Mapping[str, Any] | None = None) -> RunPlan:
        """Render the units for one orchestration pass.

        Parameters
        ----------
        values
            Current binding values, keyed by binding name. Every binding
            declared under ``watch`` is a valid placeholder.
        """
        rendered = {name: "" if v is None else v for name, v in (values or {}).items()}
        for name in self.watch:
            rendered.setdefault(name, "")
        return RunPlan(
            units=[u.to_unit(rendered) for u in self.units],
            contexts=self.context_specs(),
        )

    def bindings(self, store: ConfigurationStore) -> list[ReactiveBinding]:
        """One binding per ``watch`` entry, reading from ``store``."""
        return [
            ReactiveBinding(name=name, source=store, projection=field_path(path))
            for name, path in self.watch.items()
        ]
