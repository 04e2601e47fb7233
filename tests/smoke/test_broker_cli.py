"""
gcp-broker: CLI smoke tests

File: tests/smoke/test_broker_cli.py

Purpose
- Validate the console entrypoint end to end: catalogue dump, redacted config
  dump, local fragment execution and the exit-code contract.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from gcp_broker.main import ExitCode, cli_entrypoint


@pytest.fixture(autouse=True)
def _isolated_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("GOOGLE_CLOUD_PROJECT", raising=False)
    monkeypatch.delenv("GOOGLE_APPLICATION_CREDENTIALS", raising=False)


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


@pytest.mark.smoke
def test_tools_command_prints_catalogue(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint(["tools"]) == ExitCode.SUCCESS

    tools = json.loads(capsys.readouterr().out)
    assert [item["name"] for item in tools][:3] == ["run-gcp-code", "list-projects", "select-project"]
    assert len(tools) == 7


@pytest.mark.smoke
def test_config_command_merges_file_and_overrides(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write(tmp_path / "custom.toml", "[sandbox]\ntimeout_seconds = 12.5\n")

    code = cli_entrypoint(
        ["config", "--config", str(config_path), "--set", "selection.default_region=europe-west4"]
    )

    assert code == ExitCode.SUCCESS
    payload = json.loads(capsys.readouterr().out)
    assert payload["sandbox"]["timeout_seconds"] == 12.5
    assert payload["selection"]["default_region"] == "europe-west4"


@pytest.mark.smoke
def test_exec_runs_fragment_and_reports_outcome(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    fragment = _write(tmp_path / "sum.py", "print('adding')\nreturn {'total': 1 + 1}\n")

    code = cli_entrypoint(
        [
            "exec",
            str(fragment),
            "--project",
            "smoke-project",
            "--set",
            "observability.log_to_stderr=false",
        ]
    )

    assert code == ExitCode.SUCCESS
    payload = json.loads(capsys.readouterr().out)
    assert payload["state"] == "completed"
    assert payload["projectId"] == "smoke-project"
    assert payload["region"] == "us-central1"
    assert payload["result"] == {"total": 2}
    assert payload["console"] == ["adding"]


@pytest.mark.smoke
def test_exec_failure_exits_with_execution_failed(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    fragment = _write(tmp_path / "boom.py", "raise ValueError('boom')\nreturn 1\n")

    code = cli_entrypoint(
        ["exec", str(fragment), "--project", "p1", "--set", "observability.log_to_stderr=false"]
    )

    assert code == ExitCode.EXECUTION_FAILED
    payload = json.loads(capsys.readouterr().out)
    assert payload["state"] == "faulted"
    assert payload["errorKind"] == "FaultedExecutionError"
    assert payload["retryable"] is False


@pytest.mark.smoke
def test_exec_without_project_is_a_precondition_failure(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    fragment = _write(tmp_path / "one.py", "return 1\n")

    code = cli_entrypoint(["exec", str(fragment), "--set", "observability.log_to_stderr=false"])

    assert code == ExitCode.EXECUTION_FAILED
    assert json.loads(capsys.readouterr().out)["errorKind"] == "PreconditionError"


@pytest.mark.smoke
@pytest.mark.parametrize(
    "argv",
    [
        ["exec", "fragment.py", "--timeout", "0"],
        ["exec", "does-not-exist.py"],
        ["config", "--config", "absent.toml"],
        ["config", "--set", "novalue"],
        ["config", "--set", "sandbox.timeout_seconds=-1"],
    ],
)
def test_configuration_errors_exit_with_config_error(tmp_path: Path, argv: list[str]) -> None:
    _write(tmp_path / "fragment.py", "return 1\n")

    assert cli_entrypoint(argv) == ExitCode.CONFIG_ERROR
