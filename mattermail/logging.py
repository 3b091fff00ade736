# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Logging configuration with secret redaction and per-profile prefixes.

Usage:
    # In the service entry point
    from mattermail.logging import configure_logging
    configure_logging(level=logging.INFO)

    # In components, which receive their logger at construction
    log = ProfileLogAdapter(logging.getLogger(__name__), "support")
    log.info("Checking new emails")   # -> "[support] Checking new emails"
"""

import logging
import re
from collections.abc import MutableMapping
from typing import Any, ClassVar


#: Anything components accept as their injected logger.
Log = logging.Logger | logging.LoggerAdapter


class SecretFilter(logging.Filter):
    """Logging filter that redacts registered secrets from log output.

    Any registered secret appearing in a log message or in one of its
    string arguments is replaced with ``[REDACTED]``.  Mailbox and chat
    passwords are registered when the configuration is loaded.
    """

    _secrets: ClassVar[set[str]] = set()
    _pattern: ClassVar[re.Pattern[str] | None] = None

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact registered secrets in place.

        Returns:
            Always True (records are modified, never suppressed).
        """
        if self._pattern is not None:
            record.msg = self._pattern.sub("[REDACTED]", str(record.msg))
            if record.args:
                record.args = tuple(
                    self._pattern.sub("[REDACTED]", str(arg))
                    if isinstance(arg, str)
                    else arg
                    for arg in record.args
                )
        return True

    @classmethod
    def register_secret(cls, secret: str) -> None:
        """Register a secret to be redacted. Empty strings are ignored."""
        if secret:
            cls._secrets.add(secret)
            cls._rebuild_pattern()

    @classmethod
    def clear_secrets(cls) -> None:
        """Clear all registered secrets. Primarily for testing."""
        cls._secrets.clear()
        cls._pattern = None

    @classmethod
    def _rebuild_pattern(cls) -> None:
        if cls._secrets:
            # Longest first so overlapping secrets are fully redacted
            ordered = sorted(cls._secrets, key=len, reverse=True)
            escaped = [re.escape(s) for s in ordered]
            cls._pattern = re.compile("|".join(escaped))
        else:
            cls._pattern = None


class ProfileLogAdapter(logging.LoggerAdapter):
    """Logger adapter that prefixes every message with a profile name.

    One adapter is created per configured profile and handed to each
    pipeline component, so log lines from concurrently running profiles
    can be told apart.
    """

    def __init__(self, logger: logging.Logger, profile: str) -> None:
        super().__init__(logger, {"profile": profile})
        self.profile = profile

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        return f"[{self.profile}] {msg}", kwargs


def configure_logging(
    level: int = logging.INFO,
    format_string: str | None = None,
    add_secret_filter: bool = True,
) -> None:
    """Configure the root logger.

    Args:
        level: The logging level (e.g., logging.INFO, logging.DEBUG).
        format_string: Custom format string. If None, uses default format.
        add_secret_filter: Whether to add the SecretFilter to redact secrets.
    """
    if format_string is None:
        format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(format_string))

    if add_secret_filter:
        handler.addFilter(SecretFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    for existing_handler in root_logger.handlers[:]:
        root_logger.removeHandler(existing_handler)

    root_logger.addHandler(handler)


def get_logger(name: str, profile: str | None = None) -> Log:
    """Get a module logger, optionally wrapped with a profile prefix.

    Args:
        name: The logger name, typically __name__.
        profile: Profile display name to prefix messages with.

    Returns:
        A plain logger, or a ``ProfileLogAdapter`` when *profile* is given.
    """
    logger = logging.getLogger(name)
    if profile:
        return ProfileLogAdapter(logger, profile)
    return logger
