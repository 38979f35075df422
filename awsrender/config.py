"""TOML-based per-instance defaults.

Settings come from the command line; anything not given explicitly is filled
from ``$XDG_CONFIG_HOME/awsrender/defaults.toml`` (``~/.config`` when unset),
which keeps one table per instance plus the id of the primary instance::

    default_instance = "i-0123456789abcdef0"

    [instances.i-0123456789abcdef0]
    key_file = "~/.ssh/render.pem"
    username = "ec2-user"
    bucket = "s3://renders"
    shutdown = true

A host key that is still missing afterwards is looked up in
``~/.ssh/known_hosts`` under the instance id used as a host alias.
"""

from __future__ import annotations

import os
import sys
import tomllib
from collections.abc import Collection
from dataclasses import asdict, dataclass, field, fields, replace
from email.utils import parseaddr
from pathlib import Path
from typing import Any, TypeAlias

import tomli_w
from loguru import logger

from awsrender.exceptions import ConfigurationError
from awsrender.infra.ssh import Credentials

RawConfig: TypeAlias = dict[str, Any]

DEFAULTS_FILE_NAME = "defaults.toml"
KNOWN_HOSTS_PATH = Path.home() / ".ssh" / "known_hosts"


@dataclass(frozen=True, slots=True)
class Settings:
    """Configuration of one render submission."""

    instance_id: str = ""
    key_file: str = ""
    username: str = ""
    host_key: str = ""
    bucket: str = ""
    email: str = ""
    shutdown: bool = False

    def credentials(self) -> Credentials:
        return Credentials(host_key=self.host_key, username=self.username, key_path=self.key_file)


@dataclass
class Defaults:
    """Contents of the defaults file."""

    default_instance: str = ""
    instances: dict[str, Settings] = field(default_factory=dict)


def config_dir() -> Path:
    """Per-user configuration directory for awsrender."""
    if sys.platform == "win32":
        return Path(os.environ.get("APPDATA", Path.home())) / "awsrender"
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "awsrender"


def defaults_path() -> Path:
    return config_dir() / DEFAULTS_FILE_NAME


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid defaults file {path}: {e}") from e


def _settings_from_raw(instance_id: str, raw: RawConfig) -> Settings:
    known = {f.name for f in fields(Settings)}
    unknown = set(raw) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown keys for instance '{instance_id}': {', '.join(sorted(unknown))}"
        )
    return Settings(**{**raw, "instance_id": instance_id})


def read_defaults(path: Path | None = None) -> Defaults:
    """Load the defaults file; a missing file gives empty defaults."""
    raw = _read_toml(path or defaults_path())
    instances = {
        instance_id: _settings_from_raw(instance_id, table)
        for instance_id, table in raw.get("instances", {}).items()
    }
    return Defaults(default_instance=raw.get("default_instance", ""), instances=instances)


def write_defaults(defaults: Defaults, path: Path | None = None) -> Path:
    """Write the defaults file, creating its directory when needed."""
    target = path or defaults_path()
    target.parent.mkdir(parents=True, exist_ok=True)

    instances: RawConfig = {}
    for instance_id, settings in defaults.instances.items():
        table = asdict(settings)
        del table["instance_id"]
        instances[instance_id] = table

    with target.open("wb") as f:
        tomli_w.dump({"default_instance": defaults.default_instance, "instances": instances}, f)
    logger.debug("Wrote defaults to {path}", path=target)
    return target


def apply_defaults(settings: Settings, defaults: Defaults, explicit: Collection[str] = ()) -> Settings:
    """Fill settings not given explicitly from the instance's saved defaults.

    ``explicit`` names the fields set on the command line; those always win.
    Empty saved strings never override.
    """
    instance_id = settings.instance_id or defaults.default_instance
    if not instance_id:
        raise ConfigurationError(
            "Require either an instance ID on command line or a default primary instance"
        )
    settings = replace(settings, instance_id=instance_id)

    saved = defaults.instances.get(instance_id)
    if saved is None:
        return settings

    overrides: dict[str, Any] = {}
    for f in fields(Settings):
        if f.name == "instance_id" or f.name in explicit:
            continue
        value = getattr(saved, f.name)
        if isinstance(value, bool) or value:
            overrides[f.name] = value
    return replace(settings, **overrides)


def update_defaults(defaults: Defaults, settings: Settings, primary: bool = False) -> Defaults:
    """Record ``settings`` for its instance, optionally as the primary one."""
    instances = {**defaults.instances, settings.instance_id: settings}
    default_instance = settings.instance_id if primary else defaults.default_instance
    return Defaults(default_instance=default_instance, instances=instances)


def find_host_key(instance_id: str, known_hosts: Path | None = None) -> str | None:
    """Look up a host key stored under the instance id as a known_hosts alias.

    The last matching line wins.
    """
    path = known_hosts or KNOWN_HOSTS_PATH
    if not path.is_file():
        return None

    found: str | None = None
    with path.open(encoding="utf-8", errors="replace") as f:
        for line in f:
            parts = line.strip().split(None, 1)
            if len(parts) == 2 and instance_id in parts[0].split(","):
                found = parts[1].strip()
    return found


def validate(settings: Settings) -> None:
    """Raise ConfigurationError for missing or invalid settings.

    The host key is not checked here; it may still be found in known_hosts.
    """
    if not settings.key_file:
        raise ConfigurationError("Require SSH private key file to be specified")
    if not Path(settings.key_file).expanduser().is_file():
        raise ConfigurationError(f"Cannot locate SSH private key file {settings.key_file}")
    if not settings.username:
        raise ConfigurationError("Require SSH username to be specified")
    if not settings.instance_id:
        raise ConfigurationError("Require EC2 instance ID to be specified")
    if not settings.bucket:
        raise ConfigurationError("Require result S3 bucket to be specified")
    if settings.email:
        _, addr = parseaddr(settings.email)
        if "@" not in addr or addr != settings.email.strip():
            raise ConfigurationError(f"Invalid email address {settings.email!r}")


def resolve_settings(
    settings: Settings,
    explicit: Collection[str] = (),
    *,
    save: bool = False,
    primary: bool = False,
    path: Path | None = None,
    known_hosts: Path | None = None,
) -> Settings:
    """Merge command-line settings with saved defaults and validate them.

    With ``save`` (or ``primary``) the merged settings are written back before
    the host key lookup, so a key found in known_hosts is not persisted.
    """
    defaults = read_defaults(path)
    settings = apply_defaults(settings, defaults, explicit)
    validate(settings)

    if save or primary:
        write_defaults(update_defaults(defaults, settings, primary), path)

    if not settings.host_key:
        host_key = find_host_key(settings.instance_id, known_hosts)
        if host_key:
            logger.debug("Using host key for {id} from known_hosts", id=settings.instance_id)
            settings = replace(settings, host_key=host_key)

    if not settings.host_key:
        raise ConfigurationError("Require SSH host key to be specified (ssh-keyscan to generate)")
    return settings
