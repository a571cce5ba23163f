"""External state sources observed by the orchestrator.

The orchestrator never writes to these. Collaborators (operator actions,
the network layer, other service instances) mutate them; the orchestrator
only reads projections and subscribes to change notifications.

Architecture::

    ObservableSource                 read(projection) / subscribe(projection, cb)
        ├── ConfigurationStore       key-value config, mutated via set/update/replace
        │     └── FileConfigurationStore   JSON/YAML file, reload() by content hash
        └── (per-key cells of)
              ├── InterfaceDescriptorProvider  interface id -> InterfaceDescriptor
              └── DependencyStateProvider      service id   -> DependencyState

Every raw change notifies every subscriber with its freshly projected value;
deciding whether the projection actually changed is the subscriber's job.

Example::

    store = ConfigurationStore({"rpc": {"user": "u", "password": "p"}})
    unsubscribe = store.subscribe(field_path("rpc.password"), print)
    store.set("rpc.password", "q")   # prints "q"
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from spindle.core.errors import ConfigError

logger = logging.getLogger(__name__)

Projection = Callable[[Any], Any]
Callback = Callable[[Any], None]


def identity(value: Any) -> Any:
    return value


def field_path(path: str) -> Projection:
    """Projection selecting a dotted path (``"rpc.password"``).

    Missing keys project to ``None``. Attributes are followed as well as
    mapping keys, so the same path works on dataclass states.
    """
    parts = [p for p in path.split(".") if p]

    def project(value: Any) -> Any:
        for part in parts:
            if value is None:
                return None
            if isinstance(value, Mapping):
                value = value.get(part)
            else:
                value = getattr(value, part, None)
        return value

    project.__name__ = f"field_path({path!r})"
    return project


def _hash_value(value: Any) -> str:
    """Deterministic hash of a JSON-like value."""
    canonical = json.dumps(value, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


class ObservableSource:
    """A value that can be read through a projection and subscribed to."""

    def __init__(self, name: str = "source") -> None:
        self.name = name
        self._subscribers: dict[int, tuple[Projection, Callback]] = {}
        self._next_token = 0

    def _current(self) -> Any:
        raise NotImplementedError

    def read(self, projection: Projection = identity) -> Any:
        """Apply ``projection`` to a copy of the current value."""
        return projection(copy.deepcopy(self._current()))

    def subscribe(self, projection: Projection, callback: Callback) -> Callable[[], None]:
        """Call ``callback(projected_value)`` after every change.

        Returns:
            A function that removes the subscription. Calling it twice is harmless.
        """
        token = self._next_token
        self._next_token += 1
        self._subscribers[token] = (projection, callback)

        def unsubscribe() -> None:
            self._subscribers.pop(token, None)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _notify(self) -> None:
        for projection, callback in list(self._subscribers.values()):
            try:
                value = self.read(projection)
            except Exception:
                logger.warning("Projection failed on %s", self.name, exc_info=True)
                continue
            try:
                callback(value)
            except Exception:
                logger.warning("Subscriber callback failed on %s", self.name, exc_info=True)


# ---------------------------------------------------------------------------
# Configuration store
# ---------------------------------------------------------------------------

class ConfigurationStore(ObservableSource):
    """Persistent key-value configuration, observed read-only.

    Writes that leave the content unchanged (same hash) notify nobody.
    """

    def __init__(self, initial: Mapping[str, Any] | None = None, *, name: str = "config") -> None:
        super().__init__(name)
        self._config: dict[str, Any] = copy.deepcopy(dict(initial or {}))
        self._hash = _hash_value(self._config)
        self._version = 0

    def _current(self) -> Any:
        return self._config

    @property
    def version(self) -> int:
        """Number of content changes applied so far."""
        return self._version

    @property
    def config_hash(self) -> str:
        return self._hash

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._config)

    def set(self, key: str, value: Any) -> bool:
        """Set a dotted ``key``, creating intermediate mappings."""
        config = copy.deepcopy(self._config)
        parts = [p for p in key.split(".") if p]
        if not parts:
            raise ConfigError("Configuration key must not be empty")
        node = config
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
        return self.replace(config)

    def update(self, values: Mapping[str, Any]) -> bool:
        """Shallow-merge ``values`` into the top level."""
        config = copy.deepcopy(self._config)
        config.update(copy.deepcopy(dict(values)))
        return self.replace(config)

    def replace(self, config: Mapping[str, Any]) -> bool:
        """Swap the whole configuration. Returns True if the content changed."""
        new_config = copy.deepcopy(dict(config))
        new_hash = _hash_value(new_config)
        if new_hash == self._hash:
            return False
        logger.info(
            "Configuration %s changed (version %d, hash %s -> %s)",
            self.name, self._version + 1, self._hash[:8], new_hash[:8],
        )
        self._config = new_config
        self._hash = new_hash
        self._version += 1
        self._notify()
        return True


class FileConfigurationStore(ConfigurationStore):
    """Configuration store backed by a JSON or YAML file.

    ``reload()`` re-reads the file and publishes only when its parsed
    content differs. ``watch()`` polls it. A file that cannot be read or
    parsed keeps the last good configuration.
    """

    def __init__(self, path: str | Path, *, name: str | None = None) -> None:
        self.path = Path(path)
        super().__init__(self._load(), name=name or self.path.name)

    def reload(self) -> bool:
        """Re-read the file. Returns True if the configuration changed."""
        try:
            config = self._load()
        except (OSError, ValueError, ConfigError) as exc:
            logger.warning("Keeping previous configuration of %s: %s", self.path, exc)
            return False
        return self.replace(config)

    async def watch(self, interval: float = 1.0) -> None:
        """Poll the file until cancelled."""
        logger.info("Watching %s every %.2fs", self.path, interval)
        while True:
            await asyncio.sleep(interval)
            self.reload()

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        text = self.path.read_text(encoding="utf-8")
        if self.path.suffix == ".json":
            data = json.loads(text) if text.strip() else {}
        else:
            import yaml

            try:
                data = yaml.safe_load(text) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(f"Invalid YAML in {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file {self.path} must contain a mapping")
        return data


# ---------------------------------------------------------------------------
# Keyed providers
# ---------------------------------------------------------------------------

class _Cell(ObservableSource):
    """One keyed value of a provider; bindable like any other source."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.value: Any = None

    def _current(self) -> Any:
        return self.value

    def put(self, value: Any) -> None:
        if value == self.value:
            return
        self.value = value
        self._notify()


class _KeyedProvider:
    def __init__(self, kind: str) -> None:
        self._kind = kind
        self._cells: dict[str, _Cell] = {}

    def _cell(self, key: str) -> _Cell:
        cell = self._cells.get(key)
        if cell is None:
            cell = self._cells[key] = _Cell(f"{self._kind}:{key}")
        return cell

    def view(self, key: str) -> ObservableSource:
        """The value under ``key`` as a bindable source."""
        return self._cell(key)

    def keys(self) -> list[str]:
        return [k for k, c in self._cells.items() if c.value is not None]


@dataclass(frozen=True)
class InterfaceDescriptor:
    """Where a network interface can be reached."""

    hostname: str
    port: int
    scheme: str = "http"
    path: str = "/"

    @property
    def address(self) -> str:
        return f"{self.hostname}:{self.port}"

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.hostname}:{self.port}{self.path}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "hostname": self.hostname,
            "port": self.port,
            "scheme": self.scheme,
            "path": self.path,
        }


class InterfaceDescriptorProvider(_KeyedProvider):
    """Hostnames and ports of this service's network interfaces."""

    def __init__(self) -> None:
        super().__init__("interface")

    def read(self, interface_id: str, projection: Projection = identity) -> Any:
        return self._cell(interface_id).read(projection)

    def subscribe(
        self, interface_id: str, projection: Projection, callback: Callback,
    ) -> Callable[[], None]:
        return self._cell(interface_id).subscribe(projection, callback)

    def publish(self, interface_id: str, descriptor: InterfaceDescriptor | None) -> None:
        logger.debug("Interface %s -> %s", interface_id, descriptor)
        self._cell(interface_id).put(descriptor)

    def remove(self, interface_id: str) -> None:
        self.publish(interface_id, None)


@dataclass(frozen=True)
class DependencyState:
    """What another service instance exposes to this one."""

    service_id: str
    running: bool = False
    interfaces: dict[str, InterfaceDescriptor] = field(default_factory=dict)
    volumes: dict[str, Path] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id,
            "running": self.running,
            "interfaces": {k: v.to_dict() for k, v in self.interfaces.items()},
            "volumes": {k: str(v) for k, v in self.volumes.items()},
        }


class DependencyStateProvider(_KeyedProvider):
    """Interface descriptors and volumes of dependency services."""

    def __init__(self) -> None:
        super().__init__("dependency")

    def read(self, service_id: str, projection: Projection = identity) -> Any:
        return self._cell(service_id).read(projection)

    def subscribe(
        self, service_id: str, projection: Projection, callback: Callback,
    ) -> Callable[[], None]:
        return self._cell(service_id).subscribe(projection, callback)

    def set_state(self, state: DependencyState) -> None:
        logger.debug("Dependency %s running=%s", state.service_id, state.running)
        self._cell(state.service_id).put(state)

    def clear(self, service_id: str) -> None:
        self._cell(service_id).put(None)

    def volume_path(self, service_id: str, volume: str) -> Path | None:
        """Host path of ``volume`` exported by ``service_id``, if it exists."""
        state = self._cell(service_id).value
        if state is None:
            return None
        path = state.volumes.get(volume)
        if path is None or not Path(path).exists():
            return None
        return Path(path)
