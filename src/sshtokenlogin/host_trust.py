"""Host key acceptance policy for one configured server."""

from __future__ import annotations

import logging

import asyncssh

from sshtokenlogin.keys import AuthorizedKeySet
from sshtokenlogin.log_utils import log_event

logger = logging.getLogger(__name__)


class HostTrustVerifier:
    """Accept a host key if it is listed directly or certified by a listed CA.

    Both checks compare the marshaled public key byte for byte. asyncssh
    calls them during the handshake, before any credential is sent: the CA
    check for host certificates, the direct check for plain host keys.
    """

    def __init__(self, trusted_host_keys: AuthorizedKeySet, trusted_ca_keys: AuthorizedKeySet) -> None:
        self.trusted_host_keys = trusted_host_keys
        self.trusted_ca_keys = trusted_ca_keys

    def is_host_authority(self, ca_key: asyncssh.SSHKey) -> bool:
        accepted = ca_key in self.trusted_ca_keys
        log_event(
            logger,
            "hostkey.ca_checked",
            level=logging.DEBUG,
            accepted=accepted,
            fingerprint=_fingerprint(ca_key),
        )
        return accepted

    def is_trusted_host_key(self, key: asyncssh.SSHKey) -> bool:
        accepted = key in self.trusted_host_keys
        log_event(
            logger,
            "hostkey.key_checked",
            level=logging.DEBUG,
            accepted=accepted,
            fingerprint=_fingerprint(key),
        )
        return accepted


def _fingerprint(key: object) -> str | None:
    get_fingerprint = getattr(key, "get_fingerprint", None)
    if get_fingerprint is None:
        return None
    try:
        return get_fingerprint()
    except (ValueError, TypeError):
        return None
