# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Idempotent .env loading for ``!env`` configuration values.

Reads environment variables from two locations (in order):

1. ``~/.config/mattermail/.env`` (XDG config directory, next to
   ``mattermail.yaml``)
2. ``.env`` in the current working directory

Variables set by the first file are not overwritten by the second, and
neither overrides variables already present in the environment.
"""

import logging
from pathlib import Path

from dotenv import load_dotenv


logger = logging.getLogger(__name__)

_dotenv_loaded = False


def load_dotenv_once(xdg_env: Path | None = None) -> None:
    """Load .env files once per process.

    Args:
        xdg_env: Path of the config-directory ``.env``.  Defaults to
            ``get_dotenv_path()``.
    """
    global _dotenv_loaded
    if _dotenv_loaded:
        return

    if xdg_env is None:
        from mattermail.config import get_dotenv_path

        xdg_env = get_dotenv_path()

    for env_file in (xdg_env, Path.cwd() / ".env"):
        if env_file.exists():
            load_dotenv(env_file)
            logger.debug("Loaded .env from %s", env_file)

    _dotenv_loaded = True


def reset_dotenv_state() -> None:
    """Reset the dotenv loaded state. For testing only."""
    global _dotenv_loaded
    _dotenv_loaded = False
