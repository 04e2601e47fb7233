"""Declarative tool catalogue loaded from ``catalog.yaml``."""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from types import MappingProxyType
from typing import Any, Final

import yaml

from gcp_broker import constants

CATALOG_RESOURCE: Final[str] = "catalog.yaml"

_JSON_TYPE_CHECKS: Final[dict[str, tuple[type, ...]]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "object": (Mapping,),
    "array": (list, tuple),
}


class ToolCatalogError(ValueError):
    """The catalogue file is missing or malformed."""


class ToolArgumentError(ValueError):
    """A tool call named an unknown tool or carried invalid arguments."""


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: Mapping[str, Any]

    @property
    def required(self) -> tuple[str, ...]:
        return tuple(self.input_schema.get("required", ()))

    @property
    def properties(self) -> Mapping[str, Mapping[str, Any]]:
        return self.input_schema.get("properties", {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": _thaw(self.input_schema),
        }

    def validate_arguments(self, arguments: Mapping[str, object] | None) -> dict[str, object]:
        """Return a copy of ``arguments`` or raise ``ToolArgumentError``.

        Missing required keys and wrongly typed known keys are rejected; ``None``
        values count as absent; unknown keys pass through untouched.
        """

        if arguments is None:
            arguments = {}
        if not isinstance(arguments, Mapping):
            raise ToolArgumentError(f"{self.name}: arguments must be an object")

        cleaned = {key: value for key, value in arguments.items() if value is not None}
        for key in self.required:
            value = cleaned.get(key)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise ToolArgumentError(f"Missing required parameter: {key}")

        for key, spec in self.properties.items():
            if key not in cleaned:
                continue
            expected = spec.get("type")
            value = cleaned[key]
            if not _matches_type(value, expected):
                raise ToolArgumentError(f"{self.name}: {key} must be of type {expected}")
        return cleaned


def load_catalog(path: str | Path | None = None) -> tuple[ToolDefinition, ...]:
    """Load tool definitions from ``path`` or the packaged catalogue."""

    if path is None:
        text = resources.files("gcp_broker.tools").joinpath(CATALOG_RESOURCE).read_text("utf-8")
        source = CATALOG_RESOURCE
    else:
        source_path = Path(path)
        try:
            text = source_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ToolCatalogError(f"unable to read tool catalogue {source_path}: {exc}") from exc
        source = source_path.name

    try:
        payload = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ToolCatalogError(f"invalid YAML in {source}: {exc}") from exc

    if not isinstance(payload, list):
        raise ToolCatalogError(f"{source}: root must be a list of tools")

    definitions: list[ToolDefinition] = []
    seen: set[str] = set()
    for index, raw in enumerate(payload):
        definition = _parse_definition(raw, f"{source}[{index}]")
        if definition.name in seen:
            raise ToolCatalogError(f"{source}: duplicate tool {definition.name!r}")
        seen.add(definition.name)
        definitions.append(definition)
    return tuple(definitions)


def _parse_definition(raw: object, where: str) -> ToolDefinition:
    if not isinstance(raw, Mapping):
        raise ToolCatalogError(f"{where}: tool must be a mapping")
    name = raw.get("name")
    description = raw.get("description")
    schema = raw.get("input_schema")
    if not isinstance(name, str) or not name.strip():
        raise ToolCatalogError(f"{where}: name must be a non-empty string")
    if not isinstance(description, str) or not description.strip():
        raise ToolCatalogError(f"{where}: description must be a non-empty string")
    if not isinstance(schema, Mapping) or schema.get("type") != "object":
        raise ToolCatalogError(f"{where}: input_schema must be an object schema")

    properties = schema.get("properties") or {}
    if not isinstance(properties, Mapping):
        raise ToolCatalogError(f"{where}: input_schema.properties must be a mapping")
    resolved_properties = {
        key: _resolve_property(spec, f"{where}.{key}") for key, spec in properties.items()
    }

    required = schema.get("required") or []
    if not isinstance(required, Sequence) or isinstance(required, str):
        raise ToolCatalogError(f"{where}: input_schema.required must be a list")
    unknown = sorted(set(required) - set(resolved_properties))
    if unknown:
        raise ToolCatalogError(f"{where}: required names unknown properties {unknown}")

    input_schema = {
        "type": "object",
        "properties": resolved_properties,
        "required": list(required),
    }
    return ToolDefinition(
        name=name.strip(),
        description=description.strip(),
        input_schema=_freeze(input_schema),
    )


def _resolve_property(spec: object, where: str) -> dict[str, Any]:
    if not isinstance(spec, Mapping):
        raise ToolCatalogError(f"{where}: property must be a mapping")
    resolved = {key: value for key, value in spec.items() if key != "description_ref"}
    ref = spec.get("description_ref")
    if ref is not None:
        text = getattr(constants, str(ref), None)
        if not isinstance(text, str):
            raise ToolCatalogError(f"{where}: unknown description_ref {ref!r}")
        resolved["description"] = text
    if resolved.get("type") not in _JSON_TYPE_CHECKS:
        raise ToolCatalogError(f"{where}: unsupported type {resolved.get('type')!r}")
    return resolved


def _matches_type(value: object, expected: object) -> bool:
    checks = _JSON_TYPE_CHECKS.get(str(expected))
    if checks is None:
        return True
    if expected in {"number", "integer"}:
        if isinstance(value, bool):
            return False
        if isinstance(value, float) and not math.isfinite(value):
            return False
    return isinstance(value, checks)


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(item) for item in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [_thaw(item) for item in value]
    return value


__all__ = [
    "ToolArgumentError",
    "ToolCatalogError",
    "ToolDefinition",
    "load_catalog",
]
