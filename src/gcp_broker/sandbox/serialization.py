"""Convert fragment results into JSON-compatible data."""

from __future__ import annotations

import datetime as _dt
import enum
import math
from collections.abc import Mapping
from typing import Any

import proto
from google.protobuf import json_format

from gcp_broker.gcp.proxies import is_message
from gcp_broker.sandbox.errors import NonSerializableResultError
from gcp_broker.sandbox.isolation import defined_by_fragment

JSONValue = str | int | float | bool | None | list["JSONValue"] | dict[str, "JSONValue"]

_MAX_DEPTH = 64


def to_json_value(value: object) -> JSONValue:
    """Return a JSON-compatible copy of ``value`` or raise ``NonSerializableResultError``.

    Accepted: ``None``, ``bool``, ``int``, finite ``float``, ``str``, lists and
    tuples, mappings with ``str``/``int`` keys, enums (by name), dates and
    datetimes (ISO 8601), and protobuf messages. Cycles are rejected, and so
    is any instance of a class the fragment declared itself, even a subclass
    of an accepted type.
    """

    return _convert(value, path="result", active=set(), depth=0)


def _convert(value: object, *, path: str, active: set[int], depth: int) -> JSONValue:
    if depth > _MAX_DEPTH:
        raise NonSerializableResultError(f"{path}: nesting deeper than {_MAX_DEPTH} levels")
    if defined_by_fragment(value):
        raise NonSerializableResultError(_not_json(path, value))

    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, enum.Enum):
        return value.name
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise NonSerializableResultError(f"{path}: non-finite number {value!r}")
        return value
    if isinstance(value, (_dt.datetime, _dt.date)):
        return value.isoformat()

    if is_message(value):
        return _convert(_message_to_dict(value), path=path, active=active, depth=depth + 1)

    if isinstance(value, (list, tuple, Mapping)):
        marker = id(value)
        if marker in active:
            raise NonSerializableResultError(f"{path}: cyclic reference")
        active.add(marker)
        try:
            if isinstance(value, Mapping):
                return _convert_mapping(value, path=path, active=active, depth=depth)
            return [
                _convert(item, path=f"{path}[{index}]", active=active, depth=depth + 1)
                for index, item in enumerate(value)
            ]
        finally:
            active.discard(marker)

    raise NonSerializableResultError(_not_json(path, value))


def _not_json(path: str, value: object) -> str:
    return f"{path}: value of type {type(value).__name__} is not JSON data"


def _convert_mapping(
    value: Mapping[Any, Any], *, path: str, active: set[int], depth: int
) -> dict[str, JSONValue]:
    out: dict[str, JSONValue] = {}
    for key, item in value.items():
        if type(key) not in (str, int):
            raise NonSerializableResultError(
                f"{path}: mapping key of type {type(key).__name__} is not allowed"
            )
        out[str(key)] = _convert(item, path=f"{path}.{key}", active=active, depth=depth + 1)
    return out


def _message_to_dict(message: object) -> object:
    if isinstance(message, proto.Message):
        return type(message).to_dict(message)
    return json_format.MessageToDict(message)  # type: ignore[arg-type]


__all__ = ["JSONValue", "to_json_value"]
