"""Tests for CLI commands"""

import sys
import types

import pytest
import typer
from rich.console import Console
from typer.testing import CliRunner

from pgjobs.cli import main
from pgjobs.cli.main import app, load_registry
from pgjobs.core.exceptions import StorageError
from pgjobs.core.registries import HandlerRegistry
from pgjobs.infra.adapters import MemoryAdapter


@pytest.fixture
def runner():
    """CLI test runner"""
    return CliRunner()


@pytest.fixture
def memory(monkeypatch):
    """Route every command to one in-memory store"""
    adapter = MemoryAdapter()
    monkeypatch.setattr(main, "build_adapter", lambda settings: adapter)
    monkeypatch.setattr(main, "setup_logging", lambda settings: None)
    monkeypatch.setattr(main, "console", Console(width=200))
    return adapter


@pytest.fixture
def handlers_module(monkeypatch):
    module = types.ModuleType("cli_test_handlers")
    module.registry = HandlerRegistry()
    module.not_a_registry = object()
    monkeypatch.setitem(sys.modules, "cli_test_handlers", module)
    return module


class TestEnqueue:
    def test_enqueue_job(self, runner, memory):
        result = runner.invoke(app, ["enqueue", "send_email", '["a@example.com", 2]'])

        assert result.exit_code == 0
        assert "Enqueued send_email as job 1" in result.stdout
        [row] = memory.rows.values()
        assert row["args"] == ["a@example.com", 2]
        assert row["queue"] == ""
        assert row["priority"] == 100

    def test_enqueue_with_options(self, runner, memory):
        result = runner.invoke(
            app, ["enqueue", "resize", "--queue", "images", "--priority", "5", "--run-in", "60"]
        )

        assert result.exit_code == 0
        [row] = memory.rows.values()
        assert row["queue"] == "images"
        assert row["priority"] == 5
        assert row["args"] == []

    def test_enqueue_invalid_json(self, runner, memory):
        result = runner.invoke(app, ["enqueue", "send_email", "{not json"])

        assert result.exit_code == 1
        assert "not valid JSON" in result.stdout
        assert memory.rows == {}

    def test_enqueue_requires_array(self, runner, memory):
        result = runner.invoke(app, ["enqueue", "send_email", '{"to": "a@example.com"}'])

        assert result.exit_code == 1
        assert "must be a JSON array" in result.stdout

    def test_enqueue_invalid_priority(self, runner, memory):
        result = runner.invoke(app, ["enqueue", "send_email", "--priority", "99999"])

        assert result.exit_code == 1
        assert "Failed to enqueue job" in result.stdout

    def test_enqueue_storage_error(self, runner, monkeypatch):
        class Unreachable(MemoryAdapter):
            async def execute(self, command, params=None):
                raise StorageError("Could not check out a Postgres connection")

        monkeypatch.setattr(main, "build_adapter", lambda settings: Unreachable())
        monkeypatch.setattr(main, "setup_logging", lambda settings: None)

        result = runner.invoke(app, ["enqueue", "send_email"])

        assert result.exit_code == 1
        assert "Could not check out a Postgres connection" in result.stdout


class TestStats:
    def test_stats_empty(self, runner, memory):
        result = runner.invoke(app, ["stats"])

        assert result.exit_code == 0
        assert "No jobs queued" in result.stdout

    def test_stats_table(self, runner, memory):
        runner.invoke(app, ["enqueue", "send_email"])
        runner.invoke(app, ["enqueue", "send_email"])

        result = runner.invoke(app, ["stats"])

        assert result.exit_code == 0
        assert "send_email" in result.stdout
        assert "(default)" in result.stdout


class TestLoadRegistry:
    def test_loads_registry(self, handlers_module):
        assert load_registry("cli_test_handlers:registry") is handlers_module.registry

    def test_rejects_missing_separator(self):
        with pytest.raises(typer.BadParameter, match="module:attribute"):
            load_registry("cli_test_handlers")

    def test_rejects_unknown_module(self):
        with pytest.raises(typer.BadParameter, match="cannot import"):
            load_registry("no_such_module_for_pgjobs:registry")

    def test_rejects_non_registry(self, handlers_module):
        with pytest.raises(typer.BadParameter, match="is not a HandlerRegistry"):
            load_registry("cli_test_handlers:not_a_registry")

    def test_work_rejects_bad_handlers(self, runner, memory):
        result = runner.invoke(app, ["work", "--handlers", "nonsense"])

        assert result.exit_code != 0


class TestWork:
    @pytest.fixture
    def started(self, monkeypatch, memory):
        """Capture the pool settings instead of running workers"""
        calls = []

        async def fake_work(settings, registry, **options):
            calls.append(options)

        monkeypatch.setattr(main, "_work", fake_work)
        return calls

    def test_work_uses_settings_by_default(self, runner, handlers_module, started):
        result = runner.invoke(app, ["work", "--handlers", "cli_test_handlers:registry"])

        assert result.exit_code == 0
        assert started == [{"count": 4, "queue": "", "wake_interval": 5.0}]

    def test_work_options_override_settings(self, runner, handlers_module, started):
        result = runner.invoke(
            app,
            [
                "work",
                "--handlers",
                "cli_test_handlers:registry",
                "--workers",
                "2",
                "--queue",
                "images",
                "--wake-interval",
                "0.5",
            ],
        )

        assert result.exit_code == 0
        assert started == [{"count": 2, "queue": "images", "wake_interval": 0.5}]

    def test_work_rejects_zero_workers(self, runner, handlers_module, started):
        result = runner.invoke(
            app, ["work", "--handlers", "cli_test_handlers:registry", "--workers", "0"]
        )

        assert result.exit_code == 2
        assert started == []

    def test_work_rejects_zero_wake_interval(self, runner, handlers_module, started):
        result = runner.invoke(
            app, ["work", "--handlers", "cli_test_handlers:registry", "--wake-interval", "0"]
        )

        assert result.exit_code == 2
        assert started == []


def test_formatting_has_no_warning_helper():
    from pgjobs.cli import formatting

    assert not hasattr(formatting, "print_warning")
