# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Configuration for the MatterMail service.

Configuration is loaded from a YAML file.  The default location follows
the XDG Base Directory Specification:

    ``$XDG_CONFIG_HOME/mattermail/mattermail.yaml``
    (typically ``~/.config/mattermail/mattermail.yaml``)

``!env`` tags resolve values from environment variables, so passwords do
not have to be stored in the file::

    profiles:
      support:
        imap:
          server: imap.example.com
          username: support@example.com
          password: !env IMAP_PASSWORD
        mattermost:
          server: https://chat.example.com
          team: engineering
          username: mailbot
          password: !env MATTERMOST_PASSWORD
          channel: support-mail

Each entry under ``profiles:`` bridges one mailbox to one channel; its key
is the display name used to prefix log lines.
"""

import logging
import os
import string
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar, overload

import yaml
from platformdirs import user_config_path

from mattermail.dotenv_loader import load_dotenv_once
from mattermail.logging import SecretFilter
from mattermail.mailbox import IDLE_KEEPALIVE_SECONDS
from mattermail.transform import DEFAULT_MESSAGE_TEMPLATE


logger = logging.getLogger(__name__)

#: Application name for XDG path resolution.
_APP_NAME = "mattermail"

_BOOL_TRUTHY = frozenset({"true", "1", "yes", "on"})
_BOOL_FALSY = frozenset({"false", "0", "no", "off"})

#: Number of slots a message template must have: sender, subject, preview.
_TEMPLATE_SLOTS = 3


def get_config_path() -> Path:
    """Return the default config file path (XDG)."""
    return user_config_path(_APP_NAME) / "mattermail.yaml"


def get_dotenv_path() -> Path:
    """Return the ``.env`` path inside the XDG config directory."""
    return user_config_path(_APP_NAME) / ".env"


class ConfigError(Exception):
    """Base exception for configuration errors."""


# ---------------------------------------------------------------------------
# YAML tag placeholders
# ---------------------------------------------------------------------------


class _EnvVar:
    """Placeholder for an unresolved ``!env VAR_NAME`` tag."""

    def __init__(self, var_name: str) -> None:
        self.var_name = var_name


def _env_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> _EnvVar:
    """Handle ``!env VAR_NAME`` in YAML."""
    value = loader.construct_scalar(node)  # type: ignore[arg-type]
    return _EnvVar(str(value))


def _make_loader() -> type[yaml.SafeLoader]:
    """Create a YAML loader that understands ``!env``."""

    class EnvLoader(yaml.SafeLoader):
        pass

    EnvLoader.add_constructor("!env", _env_constructor)
    return EnvLoader


# ---------------------------------------------------------------------------
# Value resolution
# ---------------------------------------------------------------------------


def _coerce_bool(value: object) -> bool:
    """Coerce a value to bool, handling string representations."""
    if isinstance(value, bool):
        return value
    s = str(value).lower().strip()
    if s in _BOOL_TRUTHY:
        return True
    if s in _BOOL_FALSY:
        return False
    raise ConfigError(f"Cannot convert {value!r} to bool")


def _raw_resolve(value: object) -> str | None:
    """Resolve an ``_EnvVar`` to its string value, or stringify literals.

    Returns None if the value is None or the env var is not set.
    """
    if isinstance(value, _EnvVar):
        return os.environ.get(value.var_name)
    if value is None:
        return None
    return str(value)


_MISSING = object()

T = TypeVar("T")


@overload
def _resolve(value: object, coerce: type[T], *, default: T) -> T: ...


@overload
def _resolve(value: object, coerce: type[T], *, required: str) -> T: ...


def _resolve(
    value: object,
    coerce: type[Any],
    *,
    default: object = _MISSING,
    required: str = "",
) -> Any:
    """Resolve a YAML value, handling ``!env`` tags and type coercion.

    Args:
        value: Raw value from YAML (may be ``_EnvVar``, None, or a
            literal already parsed by PyYAML).
        coerce: Target type (``str``, ``int``, ``float``, ``bool``).
        default: Default when value is absent.
        required: Human-readable field name.  When set, raises
            ``ConfigError`` if the value is absent.

    Returns:
        The resolved, coerced value.
    """
    if not isinstance(value, _EnvVar) and value is not None:
        if coerce is bool:
            return _coerce_bool(value)
        if isinstance(value, coerce) and not isinstance(value, bool):
            return value

    resolved = _raw_resolve(value)

    if resolved is None:
        if required:
            if isinstance(value, _EnvVar):
                raise ConfigError(
                    f"Required config '{required}': environment variable "
                    f"'{value.var_name}' is not set"
                )
            raise ConfigError(f"Required config '{required}' is missing")
        if default is not _MISSING:
            return default
        return None

    if coerce is bool:
        return _coerce_bool(resolved)
    try:
        return coerce(resolved)
    except ValueError as e:
        name = required or "value"
        raise ConfigError(
            f"Config '{name}': cannot convert {resolved!r} to "
            f"{coerce.__name__}"
        ) from e


def _section(raw: dict, key: str, path: str) -> dict:
    section = raw.get(key)
    if not isinstance(section, dict):
        raise ConfigError(f"{path}.{key} must be a YAML mapping")
    return section


# ---------------------------------------------------------------------------
# Configuration dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ImapConfig:
    """Mailbox server and account.

    Attributes:
        server: IMAP server hostname.
        port: IMAP server port.
        username: Account name.
        password: Account password.
        mailbox: Mailbox to watch.
        use_ssl: Connect with implicit TLS.
        idle_timeout: IDLE keep-alive in seconds.
    """

    server: str
    username: str
    password: str
    port: int = 993
    mailbox: str = "INBOX"
    use_ssl: bool = True
    idle_timeout: float = IDLE_KEEPALIVE_SECONDS

    def __post_init__(self) -> None:
        """Validate and register the password for log redaction.

        Raises:
            ConfigError: If a value is out of range.
        """
        SecretFilter.register_secret(self.password)
        if not 0 < self.port < 65536:
            raise ConfigError(f"Invalid IMAP port: {self.port}")
        if self.idle_timeout <= 0:
            raise ConfigError("IMAP idle_timeout must be positive")


@dataclass(frozen=True)
class MattermostConfig:
    """Chat server, account and target channel.

    Attributes:
        server: Base URL, e.g. ``https://chat.example.com``.
        team: Team name the channel belongs to.
        username: Login id (username or email).
        password: Account password.
        channel: Channel name (not display name) to post to.
        timeout: HTTP request timeout in seconds.
    """

    server: str
    team: str
    username: str
    password: str
    channel: str
    timeout: float = 30.0

    def __post_init__(self) -> None:
        SecretFilter.register_secret(self.password)
        if not self.server.startswith(("http://", "https://")):
            raise ConfigError(
                f"Mattermost server must be an http(s) URL: {self.server}"
            )
        if self.timeout <= 0:
            raise ConfigError("Mattermost timeout must be positive")


@dataclass(frozen=True)
class ProfileConfig:
    """One mailbox-to-channel bridge.

    Attributes:
        name: Display name, used as log prefix.
        imap: Mailbox settings.
        mattermost: Chat settings.
        message_template: Post text with three ``{}`` slots filled with
            sender, subject and preview.
        retry_delay: Seconds to wait before retrying a failed step.
        retry_attempts: Attempts per step before the error is surfaced.
    """

    name: str
    imap: ImapConfig
    mattermost: MattermostConfig
    message_template: str = DEFAULT_MESSAGE_TEMPLATE
    retry_delay: float = 30.0
    retry_attempts: int = 2

    def __post_init__(self) -> None:
        _validate_template(self.name, self.message_template)
        if self.retry_delay < 0:
            raise ConfigError(f"Profile '{self.name}': negative retry_delay")
        if self.retry_attempts < 1:
            raise ConfigError(
                f"Profile '{self.name}': retry_attempts must be at least 1"
            )


def _validate_template(profile: str, template: str) -> None:
    """Check that a template has exactly three positional slots.

    Raises:
        ConfigError: If the template cannot be filled with three values.
    """
    try:
        fields = [
            name
            for _, name, _, _ in string.Formatter().parse(template)
            if name is not None
        ]
        if len(fields) != _TEMPLATE_SLOTS:
            raise ConfigError(
                f"Profile '{profile}': message_template must have "
                f"{_TEMPLATE_SLOTS} slots (sender, subject, preview), "
                f"found {len(fields)}"
            )
        template.format(*([""] * _TEMPLATE_SLOTS))
    except (ValueError, IndexError, KeyError) as e:
        raise ConfigError(
            f"Profile '{profile}': invalid message_template: {e}"
        ) from e


@dataclass(frozen=True)
class ServerConfig:
    """Complete service configuration.

    Attributes:
        profiles: Bridges keyed by display name.
    """

    profiles: dict[str, ProfileConfig]

    def __post_init__(self) -> None:
        if not self.profiles:
            raise ConfigError("At least one profile must be configured")
        logger.info("Config loaded: %d profiles", len(self.profiles))

    @classmethod
    def from_yaml(cls, config_path: Path | None = None) -> "ServerConfig":
        """Load configuration from a YAML file.

        Values tagged with ``!env VAR_NAME`` are resolved from the
        environment at load time.  A ``.env`` file is loaded first if
        present.

        Args:
            config_path: Path to YAML config file.  Defaults to
                ``~/.config/mattermail/mattermail.yaml`` (XDG).

        Raises:
            ConfigError: If the file is missing or invalid.
        """
        load_dotenv_once()

        if config_path is None:
            config_path = get_config_path()

        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        try:
            with open(config_path) as f:
                raw = yaml.load(f, Loader=_make_loader())
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(raw, dict):
            raise ConfigError(
                f"Config file must be a YAML mapping: {config_path}"
            )

        return cls.from_raw(raw)

    @classmethod
    def from_raw(cls, raw: dict) -> "ServerConfig":
        """Build config from parsed (but unresolved) YAML dict."""
        raw_profiles = raw.get("profiles")
        if not isinstance(raw_profiles, dict):
            raise ConfigError("'profiles' must be a YAML mapping")

        profiles: dict[str, ProfileConfig] = {}
        for name, profile_raw in raw_profiles.items():
            name = str(name)
            if not isinstance(profile_raw, dict):
                raise ConfigError(f"profiles.{name} must be a YAML mapping")
            profiles[name] = _parse_profile(name, profile_raw)

        return cls(profiles=profiles)


def _parse_profile(name: str, raw: dict) -> ProfileConfig:
    """Parse a single profile.

    Raises:
        ConfigError: If required values are missing or invalid.
    """
    path = f"profiles.{name}"
    imap = _section(raw, "imap", path)
    mm = _section(raw, "mattermost", path)

    return ProfileConfig(
        name=name,
        imap=ImapConfig(
            server=_resolve(
                imap.get("server"), str, required=f"{path}.imap.server"
            ),
            port=_resolve(imap.get("port"), int, default=993),
            username=_resolve(
                imap.get("username"), str, required=f"{path}.imap.username"
            ),
            password=_resolve(
                imap.get("password"), str, required=f"{path}.imap.password"
            ),
            mailbox=_resolve(imap.get("mailbox"), str, default="INBOX"),
            use_ssl=_resolve(imap.get("use_ssl"), bool, default=True),
            idle_timeout=_resolve(
                imap.get("idle_timeout"),
                float,
                default=float(IDLE_KEEPALIVE_SECONDS),
            ),
        ),
        mattermost=MattermostConfig(
            server=_resolve(
                mm.get("server"), str, required=f"{path}.mattermost.server"
            ),
            team=_resolve(
                mm.get("team"), str, required=f"{path}.mattermost.team"
            ),
            username=_resolve(
                mm.get("username"), str, required=f"{path}.mattermost.username"
            ),
            password=_resolve(
                mm.get("password"), str, required=f"{path}.mattermost.password"
            ),
            channel=_resolve(
                mm.get("channel"), str, required=f"{path}.mattermost.channel"
            ),
            timeout=_resolve(mm.get("timeout"), float, default=30.0),
        ),
        message_template=_resolve(
            raw.get("message_template"), str, default=DEFAULT_MESSAGE_TEMPLATE
        ),
        retry_delay=_resolve(raw.get("retry_delay"), float, default=30.0),
        retry_attempts=_resolve(raw.get("retry_attempts"), int, default=2),
    )
