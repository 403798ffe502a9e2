"""Capability-restricting proxy in front of the user's ssh-agent.

Only the requests needed to install a short-lived certificate (add) and to
enumerate what is loaded (list) reach the real agent. Everything else, signing
in particular, is refused locally, so the copy of the agent that is forwarded to
the remote host cannot be used to authenticate anywhere as the user.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import os
import shutil
import struct
import tempfile
from pathlib import Path
from typing import Protocol

from sshtokenlogin.errors import (
    AgentExtensionUnsupportedError,
    AgentForbiddenError,
    AgentPolicyError,
    ConnectionFailedError,
)
from sshtokenlogin.log_utils import log_event

logger = logging.getLogger(__name__)

# Agent protocol message numbers (draft-miller-ssh-agent)
SSH_AGENT_FAILURE = 5
SSH_AGENT_SUCCESS = 6
SSH_AGENTC_REQUEST_IDENTITIES = 11
SSH_AGENT_IDENTITIES_ANSWER = 12
SSH_AGENTC_SIGN_REQUEST = 13
SSH_AGENTC_ADD_IDENTITY = 17
SSH_AGENTC_REMOVE_IDENTITY = 18
SSH_AGENTC_REMOVE_ALL_IDENTITIES = 19
SSH_AGENTC_ADD_SMARTCARD_KEY = 20
SSH_AGENTC_REMOVE_SMARTCARD_KEY = 21
SSH_AGENTC_LOCK = 22
SSH_AGENTC_UNLOCK = 23
SSH_AGENTC_ADD_ID_CONSTRAINED = 25
SSH_AGENTC_ADD_SMARTCARD_KEY_CONSTRAINED = 26
SSH_AGENTC_EXTENSION = 27

# Same cap OpenSSH's agent applies to a single message
AGENT_MAX_MESSAGE = 256 * 1024

FAILURE_RESPONSE = bytes([SSH_AGENT_FAILURE])


class AgentCapability(enum.Enum):
    ADD = "add"
    LIST = "list"
    SIGN = "sign"
    REMOVE = "remove"
    REMOVE_ALL = "remove-all"
    LOCK = "lock"
    UNLOCK = "unlock"
    LIST_SIGNERS = "list-signers"
    SIGN_WITH_FLAGS = "sign-with-flags"
    EXTENSION = "extension"


ALLOWED_CAPABILITIES = frozenset({AgentCapability.ADD, AgentCapability.LIST})

_MESSAGE_CAPABILITIES = {
    SSH_AGENTC_REQUEST_IDENTITIES: AgentCapability.LIST,
    SSH_AGENTC_ADD_IDENTITY: AgentCapability.ADD,
    SSH_AGENTC_ADD_ID_CONSTRAINED: AgentCapability.ADD,
    SSH_AGENTC_REMOVE_IDENTITY: AgentCapability.REMOVE,
    SSH_AGENTC_REMOVE_SMARTCARD_KEY: AgentCapability.REMOVE,
    SSH_AGENTC_REMOVE_ALL_IDENTITIES: AgentCapability.REMOVE_ALL,
    SSH_AGENTC_LOCK: AgentCapability.LOCK,
    SSH_AGENTC_UNLOCK: AgentCapability.UNLOCK,
    SSH_AGENTC_EXTENSION: AgentCapability.EXTENSION,
}


def _read_string(payload: bytes, offset: int) -> tuple[bytes, int]:
    if offset + 4 > len(payload):
        raise ValueError("truncated agent message")
    (length,) = struct.unpack_from(">I", payload, offset)
    start = offset + 4
    end = start + length
    if end > len(payload):
        raise ValueError("truncated agent message")
    return payload[start:end], end


def _sign_flags(payload: bytes) -> int:
    _key_blob, offset = _read_string(payload, 1)
    _data, offset = _read_string(payload, offset)
    if offset + 4 > len(payload):
        return 0
    return struct.unpack_from(">I", payload, offset)[0]


def classify_request(payload: bytes) -> AgentCapability | None:
    """Map an agent request message to the capability it exercises.

    Returns ``None`` for message numbers that are not agent requests at all
    (legacy protocol 1 messages, smartcard adds, garbage).
    """
    if not payload:
        return None
    message_type = payload[0]
    if message_type == SSH_AGENTC_SIGN_REQUEST:
        try:
            flags = _sign_flags(payload)
        except ValueError:
            flags = 0
        return AgentCapability.SIGN_WITH_FLAGS if flags else AgentCapability.SIGN
    return _MESSAGE_CAPABILITIES.get(message_type)


class AgentConnection(Protocol):
    async def request(self, payload: bytes) -> bytes: ...

    async def close(self) -> None: ...


class UpstreamAgent:
    """Framed request/response connection to a local ssh-agent socket."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, path: str = "") -> None:
        self._reader = reader
        self._writer = writer
        self._lock = asyncio.Lock()
        self._closed = False
        self.path = path

    @classmethod
    async def open(cls, path: str) -> "UpstreamAgent":
        reader, writer = await asyncio.open_unix_connection(path)
        return cls(reader, writer, path)

    async def request(self, payload: bytes) -> bytes:
        if self._closed:
            raise ConnectionFailedError("agent connection closed")
        async with self._lock:
            self._writer.write(struct.pack(">I", len(payload)) + payload)
            await self._writer.drain()
            header = await self._reader.readexactly(4)
            (length,) = struct.unpack(">I", header)
            if length > AGENT_MAX_MESSAGE:
                raise ConnectionFailedError(f"agent response too large ({length} bytes)")
            return await self._reader.readexactly(length)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        with contextlib.suppress(OSError, ConnectionError):
            await self._writer.wait_closed()


class RestrictedAgentProxy:
    """Agent front-end that forwards only add and list requests.

    ``add`` and ``list`` take and return raw agent protocol messages (without
    the length prefix) and never alter them. Every other operation raises
    :class:`AgentForbiddenError`, and extension requests raise
    :class:`AgentExtensionUnsupportedError`, without touching the upstream
    connection. :meth:`handle` turns those refusals into the plain
    ``SSH_AGENT_FAILURE`` reply a real agent would send.
    """

    def __init__(self, upstream: AgentConnection) -> None:
        self._upstream = upstream
        self._closed = False

    @classmethod
    async def connect(cls, agent_path: str | None) -> "RestrictedAgentProxy":
        if not agent_path:
            raise ConnectionFailedError("agent path not set")
        try:
            upstream = await UpstreamAgent.open(agent_path)
        except OSError as exc:
            raise ConnectionFailedError(f"Connecting to local agent: {exc}") from exc
        log_event(logger, "agent.connected", path=agent_path)
        return cls(upstream)

    async def add(self, message: bytes) -> bytes:
        if classify_request(message) is not AgentCapability.ADD:
            raise ValueError("not an add-identity request")
        return await self._upstream.request(message)

    async def list(self) -> bytes:
        return await self._upstream.request(bytes([SSH_AGENTC_REQUEST_IDENTITIES]))

    async def sign(self, key_blob: bytes, data: bytes) -> bytes:
        raise AgentForbiddenError(AgentCapability.SIGN.value)

    async def sign_with_flags(self, key_blob: bytes, data: bytes, flags: int) -> bytes:
        raise AgentForbiddenError(AgentCapability.SIGN_WITH_FLAGS.value)

    async def remove(self, key_blob: bytes) -> bytes:
        raise AgentForbiddenError(AgentCapability.REMOVE.value)

    async def remove_all(self) -> bytes:
        raise AgentForbiddenError(AgentCapability.REMOVE_ALL.value)

    async def lock(self, passphrase: bytes) -> bytes:
        raise AgentForbiddenError(AgentCapability.LOCK.value)

    async def unlock(self, passphrase: bytes) -> bytes:
        raise AgentForbiddenError(AgentCapability.UNLOCK.value)

    async def signers(self) -> list:
        raise AgentForbiddenError(AgentCapability.LIST_SIGNERS.value)

    async def extension(self, extension_type: str, contents: bytes) -> bytes:
        raise AgentExtensionUnsupportedError(extension_type)

    async def handle(self, payload: bytes) -> bytes:
        """Answer one agent protocol request."""
        capability = classify_request(payload)
        try:
            if capability is AgentCapability.EXTENSION:
                name, offset = _read_string(payload, 1)
                return await self.extension(name.decode("utf-8", "replace"), payload[offset:])
            if capability not in ALLOWED_CAPABILITIES:
                raise AgentForbiddenError(capability.value if capability else f"message {payload[:1].hex()}")
            if capability is AgentCapability.ADD:
                return await self.add(payload)
            return await self.list()
        except AgentPolicyError as exc:
            log_event(logger, "agent.request_refused", reason=str(exc))
            return FAILURE_RESPONSE
        except ValueError as exc:
            log_event(logger, "agent.request_malformed", level=logging.WARNING, error=str(exc))
            return FAILURE_RESPONSE
        except (OSError, asyncio.IncompleteReadError, ConnectionFailedError) as exc:
            log_event(logger, "agent.upstream_error", level=logging.WARNING, error=str(exc))
            return FAILURE_RESPONSE

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._upstream.close()


class AgentProxyServer:
    """Serve a :class:`RestrictedAgentProxy` on a private UNIX socket.

    asyncssh forwards agent channels by connecting to a socket path, so the
    proxy gets one of its own in a 0700 temporary directory.
    """

    def __init__(self, proxy: RestrictedAgentProxy) -> None:
        self._proxy = proxy
        self._server: asyncio.AbstractServer | None = None
        self._tmpdir: str | None = None
        self._path: str | None = None

    @property
    def path(self) -> str:
        if not self._path:
            raise RuntimeError("Agent proxy server not started.")
        return self._path

    async def start(self) -> str:
        if self._server is not None:
            return self.path
        self._tmpdir = tempfile.mkdtemp(prefix="sshtokenlogin-")
        os.chmod(self._tmpdir, 0o700)
        path = str(Path(self._tmpdir) / "agent.sock")
        self._server = await asyncio.start_unix_server(self._serve_client, path=path)
        self._path = path
        log_event(logger, "agent.proxy_listening", path=path)
        return path

    async def _serve_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                try:
                    header = await reader.readexactly(4)
                except asyncio.IncompleteReadError:
                    break
                (length,) = struct.unpack(">I", header)
                if length == 0 or length > AGENT_MAX_MESSAGE:
                    log_event(logger, "agent.bad_frame", level=logging.WARNING, length=length)
                    break
                payload = await reader.readexactly(length)
                response = await self._proxy.handle(payload)
                writer.write(struct.pack(">I", len(response)) + response)
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError) as exc:
            logger.debug("agent client went away: %s", exc)
        finally:
            writer.close()

    async def close(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        if self._tmpdir is not None:
            shutil.rmtree(self._tmpdir, ignore_errors=True)
            self._tmpdir = None
        self._path = None
