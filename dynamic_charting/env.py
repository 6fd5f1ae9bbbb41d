from __future__ import annotations

import os

ENV_PREFIX = "DYNAMIC_CHARTING_"

# Settings read from the environment: CONFIG (TOML path), DATA_DIR, DB_FILE,
# and HOST/PORT for the development web server.


def env_name(name: str) -> str:
    return f"{ENV_PREFIX}{name}"


def get_env(name: str, default: str | None = None) -> str | None:
    """Value of ``DYNAMIC_CHARTING_<name>``; blank values count as unset."""
    value = os.getenv(env_name(name), "").strip()
    return value or default
