"""YAML settings loading and validation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sshtokenlogin.errors import ConfigError
from sshtokenlogin.keys import AuthorizedKeySet, parse_authorized_keys
from sshtokenlogin.log_utils import log_event

logger = logging.getLogger(__name__)

DEFAULT_LISTEN_ADDRESSES = ["127.0.0.1:0", "[::1]:0"]
DEFAULT_SSH_PORT = 22


class ServerEntry(BaseModel):
    """One ``servers:`` entry as written in the YAML document."""

    model_config = ConfigDict(extra="forbid")

    host: str | None = None
    user: str | None = None
    host_keys: str | None = None
    ca_keys: str | None = None


class SettingsDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    listen_addresses: List[str] = Field(default_factory=list)
    redirect_uri_hostname: str | None = None
    servers: Dict[str, ServerEntry] = Field(default_factory=dict)


@dataclass(frozen=True)
class ServerTarget:
    """A validated server: where to connect, as whom, and which keys to trust."""

    name: str
    host: str
    port: int
    user: str
    trusted_host_keys: AuthorizedKeySet = field(default_factory=AuthorizedKeySet)
    trusted_ca_keys: AuthorizedKeySet = field(default_factory=AuthorizedKeySet)

    @property
    def address(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"


@dataclass(frozen=True)
class Settings:
    listen_addresses: List[str]
    servers: Dict[str, ServerTarget]
    redirect_uri_hostname: str | None = None

    def target(self, name: str) -> ServerTarget:
        try:
            return self.servers[name]
        except KeyError:
            raise ConfigError(f"Server '{name}' not present in config") from None


def split_host_port(value: str, default_port: int = DEFAULT_SSH_PORT) -> tuple[str, int]:
    """Split ``host``, ``host:port`` or ``[v6]:port`` into its parts."""
    value = value.strip()
    if value.startswith("["):
        host, sep, rest = value[1:].partition("]")
        if not sep:
            raise ValueError(f"unterminated IPv6 address: {value}")
        if not rest:
            return host, default_port
        if not rest.startswith(":"):
            raise ValueError(f"invalid address: {value}")
        return host, _parse_port(rest[1:], value)
    if value.count(":") == 1:
        host, _, port = value.partition(":")
        return host, _parse_port(port, value)
    # bare hostname or unbracketed IPv6 literal
    return value, default_port


def _parse_port(text: str, address: str) -> int:
    if not text.isdigit() or not 0 <= int(text) <= 65535:
        raise ValueError(f"invalid port in address: {address}")
    return int(text)


def _build_target(name: str, entry: ServerEntry) -> ServerTarget:
    if not entry.host:
        raise ConfigError(f"Server {name}: missing host")
    if not entry.user:
        raise ConfigError(f"Server {name}: missing user")
    try:
        host, port = split_host_port(entry.host)
    except ValueError as exc:
        raise ConfigError(f"Server {name}: host: {exc}") from exc
    try:
        host_keys = parse_authorized_keys(entry.host_keys)
    except ConfigError as exc:
        raise ConfigError(f"Server {name}: host_keys: {exc}") from exc
    try:
        ca_keys = parse_authorized_keys(entry.ca_keys)
    except ConfigError as exc:
        raise ConfigError(f"Server {name}: ca_keys: {exc}") from exc
    if not host_keys and not ca_keys:
        raise ConfigError(f"Server {name}: must provide host_keys or ca_keys")
    return ServerTarget(
        name=name,
        host=host,
        port=port,
        user=entry.user,
        trusted_host_keys=host_keys,
        trusted_ca_keys=ca_keys,
    )


def parse_settings(data: Any) -> Settings:
    """Validate an already-decoded YAML document."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("settings document must be a mapping")
    try:
        document = SettingsDocument.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(_describe_validation_error(exc)) from exc

    servers = {name: _build_target(name, entry) for name, entry in document.servers.items()}
    return Settings(
        listen_addresses=list(document.listen_addresses) or list(DEFAULT_LISTEN_ADDRESSES),
        servers=servers,
        redirect_uri_hostname=document.redirect_uri_hostname or None,
    )


def load_settings(path: str | Path) -> Settings:
    """Load and validate the YAML settings file at ``path``."""
    path = Path(path).expanduser()
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"{path}: {exc.strerror or exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path}: {exc}") from exc

    settings = parse_settings(data)
    log_event(
        logger,
        "settings.loaded",
        path=str(path),
        servers=sorted(settings.servers),
        listen_addresses=settings.listen_addresses,
    )
    return settings


def _describe_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(problems) or str(exc)
