"""Stable constants shared across the broker."""

from __future__ import annotations

from typing import Final

SERVER_NAME: Final[str] = "gcp-mcp-server"
SERVER_VERSION: Final[str] = "1.0.1"

CONFIG_SCHEMA_VERSION: Final[int] = 1

# Selection and execution defaults.
DEFAULT_REGION: Final[str] = "us-central1"
DEFAULT_TIMEOUT_SECONDS: Final[float] = 30.0
DEFAULT_MAX_CONCURRENT: Final[int] = 8
DEFAULT_MAX_CONSOLE_LINES: Final[int] = 200
DEFAULT_TEARDOWN_GRACE_SECONDS: Final[float] = 0.5

# Retry defaults.
MAX_RETRIES: Final[int] = 3
RETRY_DELAY_SECONDS: Final[float] = 1.0

DEFAULT_SCOPES: Final[tuple[str, ...]] = ("https://www.googleapis.com/auth/cloud-platform",)

CODE_EXECUTION_PROMPT: Final[str] = """\
Your job is to answer questions about the GCP environment by writing Python code \
that uses the Google Cloud client libraries. The code must follow these rules:
- The code runs as the body of an async function: use `await` for every client call
- Client method calls are awaitable and return fully materialized results (pagers are \
already expanded into lists)
- Import client libraries with `import` or `require("google.cloud.compute_v1")`; \
only the modules listed in the capability catalogue are available
- `project_id` and `region` are predefined; avoid hardcoded project IDs
- Run independent calls concurrently with `asyncio.gather`
- Handle errors per call and keep going; log the reason with `print` or `console.error`
- Return only the minimal JSON data needed to answer the question
- The code MUST end with a top-level `return` of a string, number, boolean, list or dict
- Code that does not return a value is considered FAILED
- Handle pagination when listing resources
- Do not include comments in the code
Be concise, professional and to the point. Do not give generic advice; always reply \
with detailed and contextual data sourced from the current GCP environment."""

__all__ = [
    "CODE_EXECUTION_PROMPT",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_MAX_CONCURRENT",
    "DEFAULT_MAX_CONSOLE_LINES",
    "DEFAULT_REGION",
    "DEFAULT_SCOPES",
    "DEFAULT_TEARDOWN_GRACE_SECONDS",
    "DEFAULT_TIMEOUT_SECONDS",
    "MAX_RETRIES",
    "RETRY_DELAY_SECONDS",
    "SERVER_NAME",
    "SERVER_VERSION",
]
