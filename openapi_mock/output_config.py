"""Log format selection for the openapi-mock CLI."""

from __future__ import annotations

import os
from typing import Literal

LogFormat = Literal["json", "console", "plain"]

ENV_VAR_NAME = "CONSOLE_OUTPUT_FORMAT"

# CONSOLE_OUTPUT_FORMAT also accepts the output-style names auto/rich
_ENV_ALIASES: dict[str, LogFormat] = {
    "json": "json",
    "plain": "plain",
    "console": "console",
    "auto": "console",
    "rich": "console",
}


def get_log_format(cli_override: str | None = None) -> LogFormat:
    """Resolve the log format: CLI flag, then ``CONSOLE_OUTPUT_FORMAT``, then ``console``."""

    if cli_override and cli_override.lower() in ("json", "console", "plain"):
        return cli_override.lower()  # type: ignore[return-value]

    env_value = os.environ.get(ENV_VAR_NAME, "").lower()
    return _ENV_ALIASES.get(env_value, "console")
