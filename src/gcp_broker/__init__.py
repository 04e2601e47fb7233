"""
gcp-broker: package root.

Purpose
- Request broker that turns natural-language-originated instructions into
  Google Cloud API calls by running short Python fragments in a sandbox.

Import boundary
- No side effects at import time: no config loading, no logging setup and no
  Google Cloud SDK imports. Submodules are imported on demand.
"""

from __future__ import annotations

from gcp_broker.constants import SERVER_NAME, SERVER_VERSION

__version__ = SERVER_VERSION

__all__ = ["SERVER_NAME", "__version__"]
