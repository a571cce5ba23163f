"""Tests for the spindle CLI."""

from __future__ import annotations

import importlib
import json
import logging
import sys
from collections.abc import Generator
from pathlib import Path

import pytest
import structlog
from typer.testing import CliRunner

from spindle import __version__
from spindle.cli.app import app

# spindle.cli re-exports the Typer object under the submodule name
cli_app = importlib.import_module("spindle.cli.app")
runner = CliRunner()


def write_manifest(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "service.yaml"
    path.write_text(body)
    return path


VALID = """
name: demo
units:
  - {id: db, kind: daemon, command: [db]}
  - {id: migrate, command: [migrate], requires: [db]}
  - {id: api, kind: daemon, command: [api], requires: [migrate]}
  - {id: metrics, kind: daemon, command: [metrics]}
"""

CYCLIC = """
name: demo
units:
  - {id: a, command: [a], requires: [b]}
  - {id: b, command: [b], requires: [a]}
"""


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Keep log lines out of command output and leave the global log config untouched."""
    monkeypatch.setattr(cli_app, "_setup_logging", lambda: None)
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL))
    yield
    structlog.reset_defaults()


@pytest.fixture
def runtime_dirs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point contexts and volumes at tmp_path."""
    (tmp_path / "volumes" / "main").mkdir(parents=True)
    monkeypatch.setenv("SPINDLE_WORK_DIR", str(tmp_path / "contexts"))
    monkeypatch.setenv("SPINDLE_VOLUMES_DIR", str(tmp_path / "volumes"))
    return tmp_path


class TestVersion:
    def test_version_flag(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"spindle {__version__}" in result.output


class TestValidate:
    def test_valid_manifest(self, tmp_path):
        result = runner.invoke(app, ["validate", str(write_manifest(tmp_path, VALID))])
        assert result.exit_code == 0
        assert "OK" in result.output
        assert "4 units, 3 waves" in result.output

    def test_json_output(self, tmp_path):
        result = runner.invoke(app, ["validate", str(write_manifest(tmp_path, VALID)), "--json"])
        assert result.exit_code == 0
        payload = json.loads(result.stdout)
        assert payload == {
            "name": "demo",
            "valid": True,
            "waves": [["db", "metrics"], ["migrate"], ["api"]],
        }

    def test_cycle_exits_2(self, tmp_path):
        result = runner.invoke(app, ["validate", str(write_manifest(tmp_path, CYCLIC))])
        assert result.exit_code == 2

    def test_missing_file_exits_2(self, tmp_path):
        result = runner.invoke(app, ["validate", str(tmp_path / "absent.yaml")])
        assert result.exit_code == 2


@pytest.mark.integration
class TestBootstrap:
    def test_success(self, runtime_dirs):
        body = f"""
name: demo
contexts:
  main:
    mounts:
      - {{volume: main, mountpoint: /data}}
units:
  - id: init
    command: ["{sys.executable}", "-c", "print('init')"]
  - id: seed
    command: ["{sys.executable}", "-c", "import os; assert os.path.isdir('data')"]
    requires: [init]
"""
        result = runner.invoke(
            app, ["bootstrap", str(write_manifest(runtime_dirs, body)), "--json", "-t", "30"],
        )
        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["succeeded"] is True
        assert [u["state"] for u in payload["status"]["units"]] == ["succeeded", "succeeded"]

    def test_failing_unit_exits_1(self, runtime_dirs):
        body = f"""
name: demo
units:
  - id: migrate
    command: ["{sys.executable}", "-c", "import sys; sys.exit(5)"]
  - id: api
    command: ["{sys.executable}", "-c", "pass"]
    requires: [migrate]
"""
        result = runner.invoke(app, ["bootstrap", str(write_manifest(runtime_dirs, body))])
        assert result.exit_code == 1

    def test_config_values_are_rendered(self, runtime_dirs):
        config = runtime_dirs / "config.json"
        config.write_text(json.dumps({"greeting": "hello"}))
        body = f"""
name: demo
units:
  - id: greet
    command: ["{sys.executable}", "-c", "import sys; sys.exit(0 if sys.argv[1] == 'hello' else 3)", "{{greeting}}"]
watch:
  greeting: greeting
"""
        result = runner.invoke(
            app, ["bootstrap", str(write_manifest(runtime_dirs, body)), "-c", str(config)],
        )
        assert result.exit_code == 0, result.output
        assert "Bootstrap succeeded" in result.output
