"""Console entrypoint: run the CLI and map every outcome to a fixed exit code."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    SUCCESS = 0
    EXECUTION_FAILED = 1
    CONFIG_ERROR = 2
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint for ``gcp-broker`` and ``python -m gcp_broker``.

    Configuration problems (bad config file, invalid values, unreadable tool
    catalogue, missing files) exit with ``CONFIG_ERROR`` and a one-line message;
    anything unexpected exits with ``INTERNAL_ERROR`` and a traceback on stderr.
    """

    try:
        from gcp_broker.cli import run_cli

        return _exit_code_from(run_cli(argv))
    except SystemExit as exc:
        return _exit_code_from(exc.code)
    except BaseException as exc:  # noqa: BLE001 - process boundary.
        if _is_config_problem(exc):
            print(str(exc).strip() or type(exc).__name__, file=sys.stderr)
            return int(ExitCode.CONFIG_ERROR)
        traceback.print_exception(exc, file=sys.stderr)
        return int(ExitCode.INTERNAL_ERROR)


def _exit_code_from(code: object) -> int:
    if code is None:
        return int(ExitCode.SUCCESS)
    if isinstance(code, int) and code in {item.value for item in ExitCode}:
        return code
    if isinstance(code, str) and code.strip():
        print(code.strip(), file=sys.stderr)
    return int(ExitCode.INTERNAL_ERROR)


def _is_config_problem(exc: BaseException) -> bool:
    from gcp_broker.config import ConfigLoadError, ConfigValidationError
    from gcp_broker.tools.catalog import ToolCatalogError

    config_errors = (
        ConfigLoadError,
        ConfigValidationError,
        ToolCatalogError,
        FileNotFoundError,
        NotADirectoryError,
        PermissionError,
    )
    return any(isinstance(item, config_errors) for item in _causes(exc))


def _causes(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or (
            None if current.__suppress_context__ else current.__context__
        )


__all__ = ["ExitCode", "cli_entrypoint"]
