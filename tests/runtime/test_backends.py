"""Tests for process backends: the stub used by scenario tests and the local one."""

from __future__ import annotations

import asyncio
import sys

import pytest

from spindle.core.errors import BackendError
from spindle.runtime._types import CommandSpec, ContextSpec, ProbeStatus, ProcessBackend
from spindle.runtime.context import ExecutionContextManager
from spindle.runtime.local_process import LocalProcessBackend
from spindle.runtime.mock_backends import ScriptedCommand, StubProcessBackend


def py(code: str) -> CommandSpec:
    return CommandSpec([sys.executable, "-c", code])


# ── Types ────────────────────────────────────────────────────────────────


class TestCommandSpec:
    def test_argv_is_tuple_and_env_copied(self):
        env = {"A": "1"}
        cmd = CommandSpec(["server", "--port", "80"], env)
        env["A"] = "2"
        assert cmd.argv == ("server", "--port", "80")
        assert cmd.program == "server"
        assert cmd.env == {"A": "1"}
        assert cmd.to_dict() == {"argv": ["server", "--port", "80"], "env": {"A": "1"}}

    def test_empty_argv_has_no_program(self):
        assert CommandSpec([]).program == ""


def test_backends_satisfy_protocol():
    assert isinstance(StubProcessBackend(), ProcessBackend)
    assert isinstance(LocalProcessBackend(), ProcessBackend)


# ── StubProcessBackend ───────────────────────────────────────────────────


class TestStubProcessBackend:
    @pytest.mark.asyncio
    async def test_run_uses_script(self, context_manager, stub_backend):
        stub_backend.scripts["migrate"] = ScriptedCommand(exit_code=3, stderr="locked")
        context = await context_manager.create(ContextSpec("main"))

        result = await stub_backend.run(context, CommandSpec(["migrate"], {"X": "1"}))

        assert result.exit_code == 3
        assert result.stderr == "locked"
        assert stub_backend.calls[0].op == "run"
        assert stub_backend.calls[0].env == {"X": "1"}
        assert context.handles == {}
        await context_manager.destroy(context)

    @pytest.mark.asyncio
    async def test_missing_program(self, context_manager, stub_backend):
        stub_backend.scripts["ghost"] = ScriptedCommand(missing=True)
        context = await context_manager.create(ContextSpec("main"))
        with pytest.raises(BackendError) as exc_info:
            await stub_backend.run(context, CommandSpec(["ghost"]))
        assert exc_info.value.exit_code == 127
        assert stub_backend.calls == []
        await context_manager.destroy(context)

    @pytest.mark.asyncio
    async def test_daemon_lifecycle(self, context_manager, stub_backend):
        context = await context_manager.create(ContextSpec("main"))
        handle = await stub_backend.spawn(context, CommandSpec(["server"]))

        assert handle.ref in context.handles
        assert (await stub_backend.probe(handle)).is_ready
        assert stub_backend.running() == ["server"]

        stub_backend.exit("server", 9)
        assert await stub_backend.wait(handle) == 9
        probe = await stub_backend.probe(handle)
        assert probe.status is ProbeStatus.FATAL
        assert "code 9" in probe.reason
        await context_manager.destroy(context)

    @pytest.mark.asyncio
    async def test_exit_after(self, context_manager, stub_backend):
        stub_backend.scripts["crashy"] = ScriptedCommand(exit_code=2, exit_after=0.02)
        context = await context_manager.create(ContextSpec("main"))
        handle = await stub_backend.spawn(context, CommandSpec(["crashy"]))
        assert await asyncio.wait_for(stub_backend.wait(handle), timeout=1.0) == 2
        await context_manager.destroy(context)

    @pytest.mark.asyncio
    async def test_cancelled_run_is_detached(self, context_manager, stub_backend):
        stub_backend.scripts["slow"] = ScriptedCommand(delay=10)
        context = await context_manager.create(ContextSpec("main"))
        task = asyncio.create_task(stub_backend.run(context, CommandSpec(["slow"])))
        await asyncio.sleep(0.01)
        assert len(context.handles) == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert context.handles == {}
        await context_manager.destroy(context)

    @pytest.mark.asyncio
    async def test_health(self, stub_backend):
        health = await stub_backend.health()
        assert health.healthy
        assert health.to_dict()["backend"] == "stub"
        assert health.latency_ms is not None


# ── LocalProcessBackend ──────────────────────────────────────────────────


@pytest.mark.integration
class TestLocalProcessBackend:
    @pytest.mark.asyncio
    async def test_run_captures_output(self, tmp_path):
        backend = LocalProcessBackend()
        manager = ExecutionContextManager(backend, work_dir=tmp_path)
        context = await manager.create(ContextSpec("main"))
        try:
            result = await backend.run(
                context, py("import os, sys; print(os.getcwd()); print(os.environ['SPINDLE_CONTEXT'])")
            )
            assert result.succeeded
            cwd, name = result.stdout.split()
            assert cwd == str(context.root.resolve()) or cwd == str(context.root)
            assert name == "main"
        finally:
            await manager.destroy(context)

    @pytest.mark.asyncio
    async def test_run_nonzero_exit(self, tmp_path):
        backend = LocalProcessBackend()
        manager = ExecutionContextManager(backend, work_dir=tmp_path)
        context = await manager.create(ContextSpec("main"))
        try:
            result = await backend.run(context, py("import sys; sys.stderr.write('bad'); sys.exit(4)"))
            assert result.exit_code == 4
            assert result.stderr == "bad"
        finally:
            await manager.destroy(context)

    @pytest.mark.asyncio
    async def test_env_overlay_without_inheritance(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SPINDLE_LEAK", "yes")
        backend = LocalProcessBackend(inherit_env=False)
        manager = ExecutionContextManager(backend, work_dir=tmp_path)
        context = await manager.create(ContextSpec("main"))
        try:
            cmd = CommandSpec(
                [sys.executable, "-c", "import os; print(os.environ.get('SPINDLE_LEAK'), os.environ['RPC'])"],
                {"RPC": "8332"},
            )
            result = await backend.run(context, cmd)
            assert result.stdout.split() == ["None", "8332"]
        finally:
            await manager.destroy(context)

    @pytest.mark.asyncio
    async def test_missing_command(self, tmp_path):
        backend = LocalProcessBackend()
        manager = ExecutionContextManager(backend, work_dir=tmp_path)
        context = await manager.create(ContextSpec("main"))
        try:
            with pytest.raises(BackendError) as exc_info:
                await backend.run(context, CommandSpec(["spindle-no-such-binary"]))
            assert exc_info.value.exit_code == 127
            assert exc_info.value.context.context_name == "main"
        finally:
            await manager.destroy(context)

    @pytest.mark.asyncio
    async def test_spawn_probe_and_destroy(self, tmp_path):
        backend = LocalProcessBackend(kill_timeout_seconds=2.0)
        manager = ExecutionContextManager(backend, work_dir=tmp_path)
        context = await manager.create(ContextSpec("main"))

        handle = await backend.spawn(context, py("import time; print('started', flush=True); time.sleep(60)"))
        assert handle.pid is not None
        assert (await backend.probe(handle)).is_ready

        for _ in range(200):
            if "started" in backend.tail(handle):
                break
            await asyncio.sleep(0.025)
        assert backend.tail(handle) == ["started"]

        waiter = asyncio.create_task(backend.wait(handle))
        await asyncio.sleep(0)
        await manager.destroy(context)
        code = await asyncio.wait_for(waiter, timeout=5.0)

        assert code != 0
        assert (await backend.probe(handle)).is_fatal
        assert backend.tail(handle) == []

    @pytest.mark.asyncio
    async def test_destroyed_daemons_are_released(self, tmp_path):
        backend = LocalProcessBackend(kill_timeout_seconds=2.0)
        manager = ExecutionContextManager(backend, work_dir=tmp_path)

        for _ in range(3):
            context = await manager.create(ContextSpec("main"))
            await backend.spawn(context, py("import time; time.sleep(60)"))
            assert (await backend.health()).message == "1 tracked processes"
            await manager.destroy(context)

        assert (await backend.health()).message == "0 tracked processes"

    @pytest.mark.asyncio
    async def test_exited_daemon_is_fatal(self, tmp_path):
        backend = LocalProcessBackend()
        manager = ExecutionContextManager(backend, work_dir=tmp_path)
        context = await manager.create(ContextSpec("main"))
        try:
            handle = await backend.spawn(context, py("import sys; sys.exit(3)"))
            assert await asyncio.wait_for(backend.wait(handle), timeout=5.0) == 3
            probe = await backend.probe(handle)
            assert probe.is_fatal
            assert "code 3" in probe.reason
        finally:
            await manager.destroy(context)
