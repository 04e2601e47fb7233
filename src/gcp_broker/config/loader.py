"""
gcp-broker: effective configuration.

Purpose
- Produce the single effective config mapping the broker runs with.

Layering (later layers win)
1. Built-in defaults from ``gcp_broker.config.schema``.
2. ``broker.toml`` in the working directory, or the file passed explicitly (an
   explicit file must exist).
3. ``GCP_BROKER_<SECTION>_<KEY>`` environment variables. Only keys that exist in
   the merged config are recognized; the value is parsed according to the type
   of the current value (comma-separated for string lists).
4. Dotted ``section.key`` overrides from the command line.

The result is validated after the file layer and again after all layers, and
path fields are resolved relative to the config file's directory.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from gcp_broker.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "broker.toml"
ENV_PREFIX: Final[str] = "GCP_BROKER_"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "no", "off"})


class ConfigLoadError(ValueError):
    """The config file or an override could not be read or parsed."""


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    explicit = config_path is not None
    source = Path(config_path).expanduser() if explicit else Path.cwd() / DEFAULT_CONFIG_FILE
    source = source.resolve()

    config = assert_valid_config(merge_config(default_config(), _read_toml(source, explicit)))
    config = merge_config(config, env_overrides(config, os.environ if environ is None else environ))
    config = merge_config(config, _nest_dotted(cli_overrides or {}))
    return assert_valid_config(normalize_paths(assert_valid_config(config), base_dir=source.parent))


def env_overrides(config: Mapping[str, object], environ: Mapping[str, str]) -> dict[str, Any]:
    """Overrides taken from ``GCP_BROKER_*`` variables that name a known key."""

    overrides: dict[str, Any] = {}
    for path, current in _leaves(config):
        name = ENV_PREFIX + "_".join(path).upper()
        if name not in environ:
            continue
        parse = _parser_for(current)
        if parse is None:
            continue
        try:
            value = parse(environ[name].strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{name} ({'.'.join(path)}) {exc}") from exc
        _assign(overrides, path, value)
    return overrides


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve non-empty path fields against ``base_dir``."""

    resolved = merge_config({}, config)
    for path in PATH_FIELDS:
        section = resolved
        for part in path[:-1]:
            section = section.get(part, {})
        raw = section.get(path[-1]) if isinstance(section, dict) else None
        if isinstance(raw, str) and raw.strip():
            target = Path(os.path.expandvars(raw)).expanduser()
            if not target.is_absolute():
                target = base_dir / target
            section[path[-1]] = Path(os.path.normpath(target)).as_posix()
    return resolved


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Stable, redacted JSON rendering of ``config``."""

    return json.dumps(redact_config(config), sort_keys=True, indent=2, ensure_ascii=False)


def _read_toml(path: Path, required: bool) -> dict[str, Any]:
    try:
        with path.open("rb") as stream:
            return tomllib.load(stream)
    except FileNotFoundError as exc:
        if required:
            raise ConfigLoadError(f"config file not found: {path}") from exc
        return {}
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"cannot read {path}: {exc}") from exc


def _leaves(
    payload: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> Iterator[tuple[tuple[str, ...], object]]:
    for key in sorted(payload):
        value = payload[key]
        if isinstance(value, Mapping):
            yield from _leaves(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _parser_for(current: object) -> Callable[[str], object] | None:
    if isinstance(current, bool):
        return _parse_bool
    if isinstance(current, int):
        return _parse_int
    if isinstance(current, float):
        return _parse_float
    if isinstance(current, str):
        return str
    if isinstance(current, list):
        return lambda raw: [item.strip() for item in raw.split(",") if item.strip()]
    return None


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError("must be a boolean (true/false, 1/0, yes/no, on/off)")


def _parse_int(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ValueError("must be an integer") from None


def _parse_float(raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ValueError("must be a number") from None


def _nest_dotted(flat: Mapping[str, object]) -> dict[str, Any]:
    nested: dict[str, Any] = {}
    for key, value in sorted(flat.items()):
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid override key {key!r}")
        _assign(nested, path, merge_config({}, value) if isinstance(value, Mapping) else value)
    return nested


def _assign(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    for part in path[:-1]:
        child = target.get(part)
        if not isinstance(child, dict):
            child = target[part] = {}
        target = child
    target[path[-1]] = value


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "env_overrides",
    "load_config",
    "normalize_paths",
]
