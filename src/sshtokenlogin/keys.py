"""Authorized-keys parsing and the immutable trust-anchor key set."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator

import asyncssh

from sshtokenlogin.errors import ConfigError


@dataclass(frozen=True)
class AuthorizedKeySet:
    """Immutable set of public keys compared by their wire encoding."""

    keys: tuple[asyncssh.SSHKey, ...] = ()

    @classmethod
    def of(cls, keys: Iterable[asyncssh.SSHKey]) -> "AuthorizedKeySet":
        return cls(tuple(keys))

    def __contains__(self, key: object) -> bool:
        blob = _public_blob(key)
        if blob is None:
            return False
        return any(candidate.public_data == blob for candidate in self.keys)

    def __iter__(self) -> Iterator[asyncssh.SSHKey]:
        return iter(self.keys)

    def __len__(self) -> int:
        return len(self.keys)

    def __bool__(self) -> bool:
        return bool(self.keys)


def _public_blob(key: object) -> bytes | None:
    if isinstance(key, (bytes, bytearray)):
        return bytes(key)
    data = getattr(key, "public_data", None)
    return data if isinstance(data, bytes) else None


def _strip_options(line: str) -> str:
    """Drop a leading authorized_keys options field (quotes may hide spaces)."""
    quoted = False
    for index, char in enumerate(line):
        if char == '"':
            quoted = not quoted
        elif char.isspace() and not quoted:
            return line[index:].strip()
    return ""


def _import_line(line: str) -> asyncssh.SSHKey:
    try:
        return asyncssh.import_public_key(line)
    except (asyncssh.KeyImportError, ValueError):
        stripped = _strip_options(line)
        if not stripped:
            raise
        return asyncssh.import_public_key(stripped)


def parse_authorized_keys(text: str | bytes | None) -> AuthorizedKeySet:
    """Parse OpenSSH authorized_keys text into an :class:`AuthorizedKeySet`.

    Blank lines and ``#`` comments are skipped. The first unparsable line
    aborts the whole parse with a :class:`ConfigError`.
    """
    if not text:
        return AuthorizedKeySet()
    if isinstance(text, bytes):
        text = text.decode("utf-8")

    keys: list[asyncssh.SSHKey] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            keys.append(_import_line(line))
        except (asyncssh.KeyImportError, ValueError) as exc:
            raise ConfigError(f'Error parsing public key "{line}": {exc}') from exc
    return AuthorizedKeySet.of(keys)
