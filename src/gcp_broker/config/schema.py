"""
Broker configuration: defaults, validation, merging and redaction.

Validation is table driven. Every known field has a ``_Field`` entry naming the
coercion applied to it; unknown keys are rejected, and keys that look like they
carry a credential get a dedicated message pointing at the ``*_env`` form.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from gcp_broker.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_MAX_CONSOLE_LINES,
    DEFAULT_REGION,
    DEFAULT_SCOPES,
    DEFAULT_TEARDOWN_GRACE_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    MAX_RETRIES,
    RETRY_DELAY_SECONDS,
    SERVER_NAME,
    SERVER_VERSION,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

# Resolved against the config file's directory by the loader.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (("observability", "log_dir"),)

BACKOFF_CHOICES: Final[tuple[str, ...]] = ("constant", "linear", "exponential")
LOG_LEVEL_CHOICES: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_REDACTED: Final[str] = "<redacted>"
_ENV_NAME = re.compile(r"[A-Z_][A-Z0-9_]*")
_SENSITIVE_FRAGMENT = re.compile(r"secret|token|passw(?:or)?d|private|credential|api_?key|auth")


class MetaConfig(TypedDict):
    schema_version: int


class ServerConfig(TypedDict):
    name: str
    version: str


class SandboxConfig(TypedDict):
    timeout_seconds: float
    max_concurrent: int
    max_console_lines: int
    teardown_grace_seconds: float


class RetryConfig(TypedDict):
    max_attempts: int
    delay_seconds: float
    backoff: Literal["constant", "linear", "exponential"]


class SelectionConfig(TypedDict):
    default_region: str
    initial_project_env: str


class GoogleConfig(TypedDict):
    scopes: list[str]
    credentials_file_env: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stderr: bool
    redact_secrets: bool


class BrokerConfig(TypedDict):
    meta: MetaConfig
    server: ServerConfig
    sandbox: SandboxConfig
    retry: RetryConfig
    selection: SelectionConfig
    google: GoogleConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[BrokerConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "server": {
        "name": SERVER_NAME,
        "version": SERVER_VERSION,
    },
    "sandbox": {
        "timeout_seconds": DEFAULT_TIMEOUT_SECONDS,
        "max_concurrent": DEFAULT_MAX_CONCURRENT,
        "max_console_lines": DEFAULT_MAX_CONSOLE_LINES,
        "teardown_grace_seconds": DEFAULT_TEARDOWN_GRACE_SECONDS,
    },
    "retry": {
        "max_attempts": MAX_RETRIES,
        "delay_seconds": RETRY_DELAY_SECONDS,
        "backoff": "linear",
    },
    "selection": {
        "default_region": DEFAULT_REGION,
        "initial_project_env": "GOOGLE_CLOUD_PROJECT",
    },
    "google": {
        "scopes": list(DEFAULT_SCOPES),
        "credentials_file_env": "GOOGLE_APPLICATION_CREDENTIALS",
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "",
        "log_to_stderr": True,
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """One rejected value, addressed by its dotted config path."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Every issue found in a config payload, raised together."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"  {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "  <no details>"))


@dataclass(frozen=True, slots=True)
class _Field:
    coerce: Callable[[object, _Field], object]
    required: bool = True
    minimum: float | None = None
    strict: bool = False
    choices: tuple[str, ...] = ()
    upper: bool = False


def default_config() -> BrokerConfig:
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "rewrite broker.toml for the current layout"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "install a newer gcp-broker"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto ``base`` without touching either input."""

    merged: dict[str, Any] = {key: _plain_copy(base[key]) for key in sorted(base)}
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            current = merged.get(key)
            merged[key] = merge_config(current if isinstance(current, Mapping) else {}, value)
        else:
            merged[key] = _plain_copy(value)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Check ``config`` against the field table and collect every problem found."""

    issues: list[ConfigValidationIssue] = []
    if not isinstance(config, Mapping):
        issues.append(ConfigValidationIssue("<root>", f"expected object, got {_kind(config)}"))
        return ConfigValidationResult(config=None, issues=tuple(issues))

    _report_extra_keys(config, _SCHEMA, "", issues)
    normalized: dict[str, Any] = {}
    for section in sorted(_SCHEMA):
        if section not in config:
            issues.append(ConfigValidationIssue(section, "missing required field"))
        elif not isinstance(config[section], Mapping):
            issues.append(
                ConfigValidationIssue(section, f"expected object, got {_kind(config[section])}")
            )
        else:
            normalized[section] = _validate_section(section, config[section], issues)

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` with values under sensitive-looking keys replaced."""

    if not isinstance(config, Mapping):
        return {}
    return {
        key: _REDACTED if _is_sensitive_key(str(key)) else _redacted(config[key])
        for key in sorted(config, key=str)
    }


def _validate_section(
    section: str, payload: Mapping[str, object], issues: list[ConfigValidationIssue]
) -> dict[str, Any]:
    fields = _SCHEMA[section]
    _report_extra_keys(payload, fields, section, issues)
    out: dict[str, Any] = {}
    for key, spec in sorted(fields.items()):
        path = f"{section}.{key}"
        if key not in payload:
            if spec.required:
                issues.append(ConfigValidationIssue(path, "missing required field"))
            continue
        try:
            out[key] = spec.coerce(payload[key], spec)
        except ValueError as exc:
            issues.append(ConfigValidationIssue(path, str(exc)))
    return out


def _report_extra_keys(
    payload: Mapping[object, object],
    known: Mapping[str, object],
    prefix: str,
    issues: list[ConfigValidationIssue],
) -> None:
    for key in sorted(payload, key=str):
        if key in known:
            continue
        path = f"{prefix}.{key}" if prefix else str(key)
        if not isinstance(key, str):
            message = f"object key must be string, got {_kind(key)}"
        elif _is_sensitive_key(key):
            message = "embedded secret values are forbidden; use an *_env key with an env var name"
        else:
            message = "unknown field"
        issues.append(ConfigValidationIssue(path, message))


def _kind(value: object) -> str:
    return type(value).__name__


def _text(value: object, spec: _Field) -> str:
    if not isinstance(value, str):
        raise ValueError(f"expected string, got {_kind(value)}")
    stripped = value.strip()
    if not stripped:
        raise ValueError("must not be empty")
    return stripped


def _env_var(value: object, spec: _Field) -> str:
    name = _text(value, spec)
    if _ENV_NAME.fullmatch(name) is None:
        raise ValueError("must be an env var name (example: GOOGLE_APPLICATION_CREDENTIALS)")
    return name


def _optional_path(value: object, spec: _Field) -> str:
    if isinstance(value, str) and not value.strip():
        return ""
    location = _text(value, spec)
    if "\x00" in location:
        raise ValueError("must not contain NUL bytes")
    return location


def _flag(value: object, spec: _Field) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"expected boolean, got {_kind(value)}")
    return value


def _whole(value: object, spec: _Field) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"expected integer, got {_kind(value)}")
    _check_minimum(value, spec)
    return value


def _real(value: object, spec: _Field) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"expected number, got {_kind(value)}")
    number = float(value)
    if not math.isfinite(number):
        raise ValueError("must be finite")
    _check_minimum(number, spec)
    return number


def _check_minimum(value: float, spec: _Field) -> None:
    if spec.minimum is None:
        return
    if spec.strict and value <= spec.minimum:
        raise ValueError(f"must be > {spec.minimum:g}")
    if value < spec.minimum:
        raise ValueError(f"must be >= {spec.minimum:g}")


def _one_of(value: object, spec: _Field) -> str:
    if spec.upper and isinstance(value, str):
        value = value.upper()
    chosen = _text(value, spec)
    if chosen not in spec.choices:
        expected = ", ".join(sorted(spec.choices))
        raise ValueError(f"invalid value {chosen!r}; expected one of: {expected}")
    return chosen


def _scopes(value: object, spec: _Field) -> list[str]:
    if not isinstance(value, (list, tuple)) or not value:
        raise ValueError("expected a non-empty list of scope URLs")
    scopes: list[str] = []
    for index, item in enumerate(value):
        try:
            scopes.append(_text(item, spec))
        except ValueError as exc:
            raise ValueError(f"scope {index}: {exc}") from None
    return scopes


def _schema_version(value: object, spec: _Field) -> int:
    version = _whole(value, spec)
    if version != ConfigSchemaVersion:
        raise ValueError(migration_guidance(version))
    return version


_SCHEMA: Final[dict[str, dict[str, _Field]]] = {
    "meta": {"schema_version": _Field(_schema_version, minimum=1)},
    "server": {"name": _Field(_text), "version": _Field(_text)},
    "sandbox": {
        "timeout_seconds": _Field(_real, minimum=0, strict=True),
        "max_concurrent": _Field(_whole, minimum=1),
        "max_console_lines": _Field(_whole, minimum=1),
        "teardown_grace_seconds": _Field(_real, minimum=0),
    },
    "retry": {
        "max_attempts": _Field(_whole, minimum=1),
        "delay_seconds": _Field(_real, minimum=0),
        "backoff": _Field(_one_of, choices=BACKOFF_CHOICES),
    },
    "selection": {
        "default_region": _Field(_text),
        "initial_project_env": _Field(_env_var, required=False),
    },
    "google": {
        "scopes": _Field(_scopes),
        "credentials_file_env": _Field(_env_var, required=False),
    },
    "observability": {
        "log_level": _Field(_one_of, choices=LOG_LEVEL_CHOICES, upper=True),
        "log_dir": _Field(_optional_path, required=False),
        "log_to_stderr": _Field(_flag, required=False),
        "redact_secrets": _Field(_flag),
    },
}


def _is_sensitive_key(key: str) -> bool:
    snake = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", key.strip()).lower()
    snake = re.sub(r"[^a-z0-9]+", "_", snake).strip("_")
    if snake.endswith("_env"):
        return False
    return _SENSITIVE_FRAGMENT.search(snake) is not None or "key" in snake.split("_")


def _redacted(value: object) -> object:
    if isinstance(value, Mapping):
        return redact_config(value)
    if isinstance(value, (list, tuple)):
        return [_redacted(item) for item in value]
    return value


def _plain_copy(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _plain_copy(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, (list, tuple)):
        return [_plain_copy(item) for item in value]
    return copy.deepcopy(value)


__all__ = [
    "BACKOFF_CHOICES",
    "BrokerConfig",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "LOG_LEVEL_CHOICES",
    "PATH_FIELDS",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
