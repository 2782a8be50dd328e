"""Tests for layergrab.cli."""

from __future__ import annotations

import pytest
from click.testing import CliRunner

from layergrab import __version__, cli
from layergrab.errors import OrchestratorError, StartupError


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def grab_calls(monkeypatch) -> list:
    calls = []

    def fake_grab_layer(reference, output_dir, registry_format=False, remove_tag=False):
        calls.append((reference, output_dir, registry_format, remove_tag))
        return f"{output_dir}/{reference}"

    monkeypatch.setattr(cli, "grab_layer", fake_grab_layer)
    monkeypatch.setattr(cli, "install_signal_handlers", lambda: None)
    return calls


class TestUsage:
    def test_missing_layer_is_usage_error(self, runner: CliRunner) -> None:
        result = runner.invoke(cli.main, [])
        assert result.exit_code == 2

    def test_empty_layer_is_usage_error(self, runner: CliRunner, grab_calls: list) -> None:
        result = runner.invoke(cli.main, [""])
        assert result.exit_code == 2
        assert grab_calls == []

    def test_too_many_arguments(self, runner: CliRunner, grab_calls: list) -> None:
        result = runner.invoke(cli.main, ["a", "b"])
        assert result.exit_code == 2

    def test_help(self, runner: CliRunner) -> None:
        result = runner.invoke(cli.main, ["-h"])
        assert result.exit_code == 0
        assert "--registry-format" in result.output
        assert "DOCKER_HOST" in result.output

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(cli.main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestRun:
    def test_defaults(self, runner: CliRunner, grab_calls: list) -> None:
        result = runner.invoke(cli.main, ["busybox"])
        assert result.exit_code == 0
        assert grab_calls == [("busybox", ".", False, False)]

    def test_options(self, runner: CliRunner, grab_calls: list, tmp_path) -> None:
        result = runner.invoke(
            cli.main, ["-o", str(tmp_path), "--clean", "--debug", "--registry-format", "5f70bf18a086"]
        )
        assert result.exit_code == 0
        assert grab_calls == [("5f70bf18a086", str(tmp_path), True, True)]

    @pytest.mark.parametrize(
        "error",
        [
            StartupError("Shim registry took too long to come up"),
            OrchestratorError("Cannot resolve 'busybox'", stage="resolve"),
        ],
    )
    def test_failures_exit_1(self, runner: CliRunner, monkeypatch, error) -> None:
        def failing_grab_layer(*args, **kwargs):
            raise error

        monkeypatch.setattr(cli, "grab_layer", failing_grab_layer)
        monkeypatch.setattr(cli, "install_signal_handlers", lambda: None)

        result = runner.invoke(cli.main, ["busybox"])
        assert result.exit_code == 1
