"""Checks on the environment the monitor runs in."""

from __future__ import annotations

import os
from collections.abc import Mapping

REQUIRED_ENV_VARS: dict[str, bool] = {
    "HOOK_PATH": True,
    "OTHER_ENV_VAR": False,
}


class MissingEnvironmentError(Exception):
    """A required environment variable is not set."""

    def __init__(self, name: str) -> None:
        super().__init__(f"required environment variable {name} not set")
        self.name = name


def validate_env_vars(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Check the known variables and return those that are set.

    Raises MissingEnvironmentError for the first required variable missing.
    """
    env = os.environ if environ is None else environ
    found: dict[str, str] = {}
    for name, required in REQUIRED_ENV_VARS.items():
        if name in env:
            found[name] = env[name]
        elif required:
            raise MissingEnvironmentError(name)
    return found