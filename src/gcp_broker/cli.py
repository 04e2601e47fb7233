"""Command-line interface router for gcp-broker."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import tomllib
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from gcp_broker.config import dump_effective_config, load_config
from gcp_broker.constants import SERVER_NAME, SERVER_VERSION
from gcp_broker.observability import configure_structlog, setup_logging, shutdown_logging


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gcp-broker",
        description=(
            f"{SERVER_NAME} {SERVER_VERSION}: MCP broker running sandboxed Python against "
            "Google Cloud.\n\n"
            "Common workflows:\n"
            "  gcp-broker serve                         Run the MCP stdio server\n"
            "  gcp-broker exec query.py --project p1    Run one fragment locally\n"
            "  gcp-broker tools                         Print the tool catalogue\n"
            "  gcp-broker config                        Show effective config (redacted)\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to broker TOML config (default: ./broker.toml if present).",
    )
    common.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a config value, e.g. --set sandbox.timeout_seconds=10 (repeatable).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser(
        "serve", parents=[common], help="Run the MCP server over stdio"
    )
    serve_parser.set_defaults(handler=_cmd_serve)

    exec_parser = subparsers.add_parser(
        "exec",
        parents=[common],
        help="Run one code fragment through the sandbox and print the outcome",
        description=(
            "Run a Python fragment through the sandbox engine.\n\n"
            "Examples:\n"
            "  gcp-broker exec query.py --project my-project\n"
            "  echo 'return 1 + 1' | gcp-broker exec - --project my-project\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    exec_parser.add_argument("file", help="Fragment file, or '-' to read stdin")
    exec_parser.add_argument("--project", default=None, help="Target project ID")
    exec_parser.add_argument("--region", default=None, help="Target region")
    exec_parser.add_argument(
        "--timeout", type=float, default=None, help="Deadline in seconds for this run"
    )
    exec_parser.set_defaults(handler=_cmd_exec)

    tools_parser = subparsers.add_parser(
        "tools", parents=[common], help="Print the tool catalogue as JSON"
    )
    tools_parser.set_defaults(handler=_cmd_tools)

    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Show effective configuration (redacted)"
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return the process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    configure_structlog()
    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_serve(args: argparse.Namespace) -> int:
    from gcp_broker.runtime import build_runtime
    from gcp_broker.server import BrokerServer

    config = _load_effective_config(args)
    setup_logging(config["observability"], session_id=_new_session_id())
    try:
        server = BrokerServer(build_runtime(config))
        try:
            asyncio.run(server.serve_stdio())
        except KeyboardInterrupt:
            pass
    finally:
        shutdown_logging()
    return 0


def _cmd_exec(args: argparse.Namespace) -> int:
    from gcp_broker.runtime import build_runtime

    source = _read_fragment(args.file)
    if args.timeout is not None and args.timeout <= 0:
        raise CLIError("--timeout must be > 0", exit_code=2)

    config = _load_effective_config(args)
    setup_logging(config["observability"], session_id=_new_session_id())
    try:
        runtime = build_runtime(config)
        outcome = asyncio.run(
            runtime.engine.execute(
                source, args.project, args.region, timeout_seconds=args.timeout
            )
        )
    finally:
        shutdown_logging()

    _emit_json(outcome.to_dict())
    return 0 if outcome.succeeded else 1


def _cmd_tools(args: argparse.Namespace) -> int:
    from gcp_broker.tools.catalog import load_catalog

    del args
    _emit_json([definition.to_dict() for definition in load_catalog()])
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    sys.stdout.write(dump_effective_config(config) + "\n")
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    return load_config(args.config_path, cli_overrides=_parse_overrides(args.overrides))


def _parse_overrides(raw_items: Sequence[str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for item in raw_items:
        key, separator, raw_value = item.partition("=")
        if not separator or not key.strip():
            raise CLIError(f"invalid --set value {item!r}; expected KEY=VALUE", exit_code=2)
        overrides[key.strip()] = _parse_override_value(raw_value.strip())
    return overrides


def _parse_override_value(raw: str) -> object:
    # TOML literals (numbers, booleans, quoted strings, arrays); bare words stay strings.
    try:
        return tomllib.loads(f"value = {raw}")["value"]
    except tomllib.TOMLDecodeError:
        return raw


def _read_fragment(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"unable to read fragment {path}: {exc}", exit_code=2) from exc


def _new_session_id() -> str:
    return uuid.uuid4().hex


def _emit_json(payload: object) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False) + "\n")


__all__ = ["CLIError", "build_parser", "run_cli"]
