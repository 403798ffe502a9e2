from __future__ import annotations

import asyncio
import struct
import tempfile
from pathlib import Path

from sshtokenlogin.agent_proxy import (
    SSH_AGENT_FAILURE,
    SSH_AGENT_IDENTITIES_ANSWER,
    SSH_AGENT_SUCCESS,
    SSH_AGENTC_ADD_ID_CONSTRAINED,
    SSH_AGENTC_ADD_IDENTITY,
    SSH_AGENTC_REQUEST_IDENTITIES,
)

EMPTY_IDENTITIES = bytes([SSH_AGENT_IDENTITIES_ANSWER]) + struct.pack(">I", 0)


class RecordingUpstream:
    """In-memory stand-in for the upstream agent connection."""

    def __init__(self, responses: dict[int, bytes] | None = None) -> None:
        self.responses = responses or {}
        self.requests: list[bytes] = []
        self.closed = 0

    async def request(self, payload: bytes) -> bytes:
        self.requests.append(payload)
        return self.responses.get(payload[0], bytes([SSH_AGENT_FAILURE]))

    async def close(self) -> None:
        self.closed += 1


class FakeAgent:
    """Minimal ssh-agent on a UNIX socket that records what it is asked."""

    def __init__(self, identities: bytes = EMPTY_IDENTITIES) -> None:
        self.identities = identities
        self.received: list[bytes] = []
        self._server: asyncio.AbstractServer | None = None
        self._tmpdir = tempfile.TemporaryDirectory(prefix="fake-agent-")
        self.path = str(Path(self._tmpdir.name) / "agent.sock")

    async def __aenter__(self) -> "FakeAgent":
        self._server = await asyncio.start_unix_server(self._serve, path=self.path)
        return self

    async def __aexit__(self, *exc: object) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
        self._tmpdir.cleanup()

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                header = await reader.readexactly(4)
                payload = await reader.readexactly(struct.unpack(">I", header)[0])
                self.received.append(payload)
                if payload[0] == SSH_AGENTC_REQUEST_IDENTITIES:
                    response = self.identities
                elif payload[0] in (SSH_AGENTC_ADD_IDENTITY, SSH_AGENTC_ADD_ID_CONSTRAINED):
                    response = bytes([SSH_AGENT_SUCCESS])
                else:
                    response = bytes([SSH_AGENT_FAILURE])
                writer.write(struct.pack(">I", len(response)) + response)
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()


def frame(payload: bytes) -> bytes:
    return struct.pack(">I", len(payload)) + payload


def ssh_string(value: bytes) -> bytes:
    return struct.pack(">I", len(value)) + value


async def agent_roundtrip(path: str, payload: bytes) -> bytes:
    reader, writer = await asyncio.open_unix_connection(path)
    try:
        writer.write(frame(payload))
        await writer.drain()
        header = await reader.readexactly(4)
        return await reader.readexactly(struct.unpack(">I", header)[0])
    finally:
        writer.close()


async def wait_for_condition(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)
