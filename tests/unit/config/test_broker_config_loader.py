"""
gcp-broker: unit tests for the runtime config loader

File: tests/unit/config/test_broker_config_loader.py

Purpose
- Validate precedence (CLI > env > file > defaults), env coercion, path
  normalization and the redacted effective-config dump.

What this test file should cover
- Defaults when no file is present.
- File, env and CLI layering on the same key.
- Coercion errors for malformed env values.
- Missing explicit file and invalid TOML.

Functional requirements
- Offline; ``environ`` is always injected so the host environment never leaks in.

Non-functional requirements
- Deterministic.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from gcp_broker.config import (
    ConfigLoadError,
    ConfigValidationError,
    default_config,
    dump_effective_config,
    load_config,
)

if TYPE_CHECKING:
    from pathlib import Path


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_apply_when_default_file_is_absent(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    config = load_config(environ={})

    assert config["sandbox"]["timeout_seconds"] == 30.0
    assert config["retry"] == {"backoff": "linear", "delay_seconds": 1.0, "max_attempts": 3}
    assert config["selection"]["default_region"] == "us-central1"
    assert config["observability"]["log_dir"] == ""
    assert config["server"] == default_config()["server"]


def test_precedence_cli_over_env_over_file(tmp_path: Path) -> None:
    config_file = _write(
        tmp_path / "broker.toml",
        "[sandbox]\ntimeout_seconds = 12\n\n[retry]\nmax_attempts = 4\nbackoff = 'constant'\n",
    )
    environ = {
        "GCP_BROKER_SANDBOX_TIMEOUT_SECONDS": "20",
        "GCP_BROKER_RETRY_BACKOFF": "exponential",
    }

    from_file = load_config(config_file, environ={})
    from_env = load_config(config_file, environ=environ)
    from_cli = load_config(
        config_file,
        environ=environ,
        cli_overrides={"sandbox.timeout_seconds": 5, "selection.default_region": "europe-west1"},
    )

    assert from_file["sandbox"]["timeout_seconds"] == 12.0
    assert from_file["retry"]["max_attempts"] == 4
    assert from_env["sandbox"]["timeout_seconds"] == 20.0
    assert from_env["retry"]["backoff"] == "exponential"
    assert from_env["retry"]["max_attempts"] == 4
    assert from_cli["sandbox"]["timeout_seconds"] == 5.0
    assert from_cli["selection"]["default_region"] == "europe-west1"
    assert from_cli["retry"]["backoff"] == "exponential"


def test_env_values_are_coerced_by_default_type(tmp_path: Path) -> None:
    config = load_config(
        _write(tmp_path / "broker.toml", ""),
        environ={
            "GCP_BROKER_OBSERVABILITY_LOG_TO_STDERR": "off",
            "GCP_BROKER_SANDBOX_MAX_CONCURRENT": "3",
            "GCP_BROKER_GOOGLE_SCOPES": "https://a.example/scope, https://b.example/scope",
        },
    )

    assert config["observability"]["log_to_stderr"] is False
    assert config["sandbox"]["max_concurrent"] == 3
    assert config["google"]["scopes"] == ["https://a.example/scope", "https://b.example/scope"]


@pytest.mark.parametrize(
    ("env_name", "raw", "fragment"),
    [
        ("GCP_BROKER_SANDBOX_MAX_CONCURRENT", "many", "must be an integer"),
        ("GCP_BROKER_SANDBOX_TIMEOUT_SECONDS", "soon", "must be a number"),
        ("GCP_BROKER_OBSERVABILITY_REDACT_SECRETS", "maybe", "must be a boolean"),
    ],
)
def test_malformed_env_values_raise_load_errors(
    tmp_path: Path, env_name: str, raw: str, fragment: str
) -> None:
    with pytest.raises(ConfigLoadError, match=fragment):
        load_config(_write(tmp_path / "broker.toml", ""), environ={env_name: raw})


def test_invalid_override_values_fail_validation(tmp_path: Path) -> None:
    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(
            _write(tmp_path / "broker.toml", ""),
            environ={},
            cli_overrides={"sandbox.timeout_seconds": 0, "retry.backoff": "random"},
        )

    paths = {issue.path for issue in excinfo.value.issues}
    assert paths == {"sandbox.timeout_seconds", "retry.backoff"}


def test_explicit_missing_file_and_invalid_toml_raise(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(_write(tmp_path / "broken.toml", "[sandbox\n"), environ={})


def test_log_dir_is_resolved_relative_to_config_file(tmp_path: Path) -> None:
    nested = tmp_path / "conf"
    nested.mkdir()
    config_file = _write(
        nested / "broker.toml",
        "[observability]\nlog_level = 'debug'\nredact_secrets = true\nlog_dir = 'logs'\n",
    )

    config = load_config(config_file, environ={})

    assert config["observability"]["log_level"] == "DEBUG"
    assert config["observability"]["log_dir"] == (nested / "logs").resolve().as_posix()


def test_dump_effective_config_is_sorted_and_redacted(tmp_path: Path) -> None:
    config = load_config(_write(tmp_path / "broker.toml", ""), environ={})

    dumped = dump_effective_config(config)
    parsed = json.loads(dumped)

    assert dumped == dump_effective_config(config)
    assert list(parsed) == sorted(parsed)
    assert parsed["google"]["credentials_file_env"] == "GOOGLE_APPLICATION_CREDENTIALS"
    assert parsed["observability"]["redact_secrets"] == "<redacted>"
