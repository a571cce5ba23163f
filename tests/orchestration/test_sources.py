"""Tests for external state sources: configuration store and providers."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from spindle.core.errors import ConfigError
from spindle.orchestration.sources import (
    ConfigurationStore,
    DependencyState,
    DependencyStateProvider,
    FileConfigurationStore,
    InterfaceDescriptor,
    InterfaceDescriptorProvider,
    field_path,
)


class TestFieldPath:
    def test_mapping_path(self):
        assert field_path("rpc.password")({"rpc": {"password": "p"}}) == "p"

    def test_missing_key_is_none(self):
        assert field_path("rpc.password")({"rpc": {}}) is None
        assert field_path("a.b.c")({}) is None

    def test_attributes(self):
        state = DependencyState("db", running=True)
        assert field_path("running")(state) is True


class TestConfigurationStore:
    def test_read_returns_copy(self):
        store = ConfigurationStore({"rpc": {"user": "u"}})
        snapshot = store.read()
        snapshot["rpc"]["user"] = "mutated"
        assert store.read(field_path("rpc.user")) == "u"

    def test_set_notifies_with_projection(self):
        store = ConfigurationStore({"rpc": {"user": "u", "password": "p"}})
        seen: list = []
        store.subscribe(field_path("rpc.password"), seen.append)

        assert store.set("rpc.password", "q") is True
        assert store.set("rpc.user", "v") is True

        assert seen == ["q", "q"]
        assert store.version == 2

    def test_identical_write_is_silent(self):
        store = ConfigurationStore({"a": 1})
        seen: list = []
        store.subscribe(lambda v: v, seen.append)
        before = store.config_hash

        assert store.set("a", 1) is False
        assert store.replace({"a": 1}) is False

        assert seen == []
        assert store.version == 0
        assert store.config_hash == before

    def test_set_creates_intermediate_mappings(self):
        store = ConfigurationStore()
        store.set("tor.proxy.port", 9050)
        assert store.snapshot() == {"tor": {"proxy": {"port": 9050}}}

    def test_empty_key_rejected(self):
        with pytest.raises(ConfigError):
            ConfigurationStore().set("", 1)

    def test_update_is_shallow(self):
        store = ConfigurationStore({"a": {"x": 1}, "b": 2})
        store.update({"a": {"y": 2}})
        assert store.snapshot() == {"a": {"y": 2}, "b": 2}

    def test_unsubscribe(self):
        store = ConfigurationStore()
        seen: list = []
        unsubscribe = store.subscribe(lambda v: v, seen.append)
        unsubscribe()
        unsubscribe()
        store.set("a", 1)
        assert seen == []
        assert store.subscriber_count == 0

    def test_failing_subscriber_does_not_block_others(self):
        store = ConfigurationStore()
        seen: list = []

        def broken(value):
            raise RuntimeError("boom")

        store.subscribe(lambda v: v, broken)
        store.subscribe(field_path("a"), seen.append)
        store.set("a", 1)
        assert seen == [1]


class TestFileConfigurationStore:
    def test_json_file(self, tmp_path: Path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"rpc": {"password": "p"}}))
        store = FileConfigurationStore(path)
        assert store.read(field_path("rpc.password")) == "p"
        assert store.name == "config.json"

    def test_yaml_reload(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("rpc:\n  password: p\n")
        store = FileConfigurationStore(path)
        seen: list = []
        store.subscribe(field_path("rpc.password"), seen.append)

        assert store.reload() is False
        path.write_text("rpc:\n  password: q\n")
        assert store.reload() is True
        assert seen == ["q"]

    def test_missing_file_is_empty(self, tmp_path: Path):
        assert FileConfigurationStore(tmp_path / "absent.yaml").snapshot() == {}

    def test_non_mapping_rejected(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            FileConfigurationStore(path)

    def test_broken_file_keeps_previous(self, tmp_path: Path):
        path = tmp_path / "config.json"
        path.write_text('{"a": 1}')
        store = FileConfigurationStore(path)
        path.write_text("{not json")
        assert store.reload() is False
        assert store.snapshot() == {"a": 1}

    @pytest.mark.asyncio
    async def test_watch_picks_up_changes(self, tmp_path: Path):
        path = tmp_path / "config.json"
        path.write_text('{"a": 1}')
        store = FileConfigurationStore(path)
        task = asyncio.create_task(store.watch(interval=0.01))
        try:
            path.write_text('{"a": 2}')
            for _ in range(100):
                if store.version:
                    break
                await asyncio.sleep(0.01)
            assert store.snapshot() == {"a": 2}
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


class TestProviders:
    def test_interface_publish_notifies_on_change_only(self):
        provider = InterfaceDescriptorProvider()
        seen: list = []
        provider.subscribe("rpc", field_path("port"), seen.append)

        descriptor = InterfaceDescriptor("node.local", 8332)
        provider.publish("rpc", descriptor)
        provider.publish("rpc", InterfaceDescriptor("node.local", 8332))
        provider.remove("rpc")

        assert seen == [8332, None]
        assert provider.keys() == []
        assert descriptor.url == "http://node.local:8332/"
        assert descriptor.address == "node.local:8332"

    def test_dependency_state(self, tmp_path: Path):
        provider = DependencyStateProvider()
        provider.set_state(
            DependencyState(
                "bitcoind",
                running=True,
                interfaces={"rpc": InterfaceDescriptor("bitcoind.embassy", 8332)},
                volumes={"main": tmp_path},
            )
        )
        assert provider.read("bitcoind", field_path("running")) is True
        assert provider.volume_path("bitcoind", "main") == tmp_path
        assert provider.keys() == ["bitcoind"]
        assert provider.read("bitcoind").to_dict()["interfaces"]["rpc"]["port"] == 8332

        provider.clear("bitcoind")
        assert provider.read("bitcoind") is None
        assert provider.volume_path("bitcoind", "main") is None
