"""Module entrypoint for ``python -m gcp_broker``."""

from __future__ import annotations

from gcp_broker.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
