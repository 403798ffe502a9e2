"""Per-server SSH login: dial, authenticate, forward the restricted agent, relay."""

from __future__ import annotations

import asyncio
import logging
import socket
import sys
from typing import BinaryIO, Callable, Sequence

import asyncssh

from sshtokenlogin import display
from sshtokenlogin.auth_bridge import InteractiveAuthBridge, Prompter
from sshtokenlogin.browser import open_browser
from sshtokenlogin.callback_server import ResponseHandoff
from sshtokenlogin.errors import ConnectionFailedError, HostKeyMismatchError, TargetError, TokenLoginError
from sshtokenlogin.host_trust import HostTrustVerifier
from sshtokenlogin.log_utils import log_context, log_event
from sshtokenlogin.settings import ServerTarget, Settings

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_S = 30.0
# asyncssh reads 0 as "no limit"; a browser round waits on a human
LOGIN_TIMEOUT_DISABLED = 0

# Every host key goes through the HostTrustVerifier callbacks
_NO_KNOWN_HOSTS: tuple[list, list, list] = ([], [], [])


class RelaySession(asyncssh.SSHClientSession):
    """Copy remote stdout/stderr to the local streams as data arrives."""

    def __init__(self, stdout: BinaryIO, stderr: BinaryIO) -> None:
        self._stdout = stdout
        self._stderr = stderr

    def data_received(self, data: bytes, datatype: asyncssh.DataType) -> None:
        stream = self._stderr if datatype == asyncssh.EXTENDED_DATA_STDERR else self._stdout
        stream.write(data)
        stream.flush()

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            logger.debug("session channel closed with error: %s", exc)


class TokenLoginClient(asyncssh.SSHClient):
    """asyncssh client hooks bound to one server's trust and auth policies."""

    def __init__(self, verifier: HostTrustVerifier, bridge: InteractiveAuthBridge) -> None:
        self._verifier = verifier
        self._bridge = bridge
        self.auth_error: TokenLoginError | None = None
        self.lost_exc: Exception | None = None

    def validate_host_public_key(self, host: str, addr: str, port: int, key: asyncssh.SSHKey) -> bool:
        return self._verifier.is_trusted_host_key(key)

    def validate_host_ca_key(self, host: str, addr: str, port: int, key: asyncssh.SSHKey) -> bool:
        return self._verifier.is_host_authority(key)

    def auth_banner_received(self, msg: str, lang: str) -> None:
        display.print_banner(msg)

    def kbdint_auth_requested(self) -> str:
        return ""

    async def kbdint_challenge_received(
        self,
        name: str,
        instructions: str,
        lang: str,
        prompts: Sequence[tuple[str, bool]],
    ) -> list[str] | None:
        try:
            return await self._bridge.respond(name, instructions, lang, prompts)
        except TokenLoginError as exc:
            # asyncssh gives up on keyboard-interactive when we return None
            self.auth_error = exc
            return None

    def connection_lost(self, exc: Exception | None) -> None:
        self.lost_exc = exc


def _is_clean_close(exc: Exception | None) -> bool:
    return exc is None or isinstance(exc, asyncssh.ConnectionLost)


class SessionOrchestrator:
    """Log in to each requested server in turn.

    Targets run strictly one after another; the first failure stops the run
    and is reported as ``server '<name>': <error>``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        agent_path: str,
        handoff: ResponseHandoff,
        redirect_uri: str,
        prompter: Prompter | None = None,
        browser_opener: Callable[[str], None] = open_browser,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
        connect_timeout: float = CONNECT_TIMEOUT_S,
    ) -> None:
        self._settings = settings
        self._agent_path = agent_path
        self._handoff = handoff
        self._redirect_uri = redirect_uri
        self._prompter = prompter
        self._browser_opener = browser_opener
        self._stdout = stdout if stdout is not None else sys.stdout.buffer
        self._stderr = stderr if stderr is not None else sys.stderr.buffer
        self._connect_timeout = connect_timeout

    async def run(self, names: Sequence[str]) -> None:
        # Unknown names are a configuration error, caught before dialing anything
        targets = [self._settings.target(name) for name in names]
        for name, target in zip(names, targets):
            with log_context(server=name):
                try:
                    await self.login(target)
                except TokenLoginError as exc:
                    log_event(logger, "server.failed", level=logging.ERROR, error=str(exc))
                    raise TargetError(name, exc) from exc
                log_event(logger, "server.done")

    async def login(self, target: ServerTarget) -> None:
        verifier = HostTrustVerifier(target.trusted_host_keys, target.trusted_ca_keys)
        bridge = InteractiveAuthBridge(
            self._handoff,
            self._redirect_uri,
            prompter=self._prompter,
            browser_opener=self._browser_opener,
        )
        client = TokenLoginClient(verifier, bridge)

        sock = await self._dial(target)
        log_event(logger, "ssh.dialed", address=target.address)
        try:
            conn = await asyncssh.connect(
                target.host,
                target.port,
                sock=sock,
                username=target.user,
                client_factory=lambda: client,
                known_hosts=_NO_KNOWN_HOSTS,
                config=[],
                client_keys=None,
                password=None,
                preferred_auth="keyboard-interactive",
                login_timeout=LOGIN_TIMEOUT_DISABLED,
                agent_path=self._agent_path,
                agent_forwarding=True,
            )
        except asyncssh.HostKeyNotVerifiable as exc:
            raise HostKeyMismatchError(f"host public key not matched: {exc.reason}") from exc
        except asyncssh.Error as exc:
            if client.auth_error is not None:
                raise client.auth_error from exc
            raise TokenLoginError(f"Dial error: {exc.reason}") from exc
        except OSError as exc:
            raise ConnectionFailedError(f"Dial error: {exc}") from exc

        async with conn:
            log_event(logger, "ssh.authenticated", user=target.user)
            try:
                # Opening the session also sends auth-agent-req@openssh.com,
                # which is what makes the server issue the certificate.
                await conn.create_session(
                    lambda: RelaySession(self._stdout, self._stderr),
                    encoding=None,
                )
            except asyncssh.Error as exc:
                raise TokenLoginError(f"Unable to open session: {exc.reason}") from exc
            except OSError as exc:
                raise ConnectionFailedError(f"Unable to open session: {exc}") from exc
            log_event(logger, "ssh.session_open")
            await conn.wait_closed()

        if not _is_clean_close(client.lost_exc):
            raise TokenLoginError(f"Error waiting for close: {client.lost_exc}")
        log_event(logger, "ssh.closed")

    async def _dial(self, target: ServerTarget) -> socket.socket:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(socket.create_connection, (target.host, target.port), self._connect_timeout),
                timeout=self._connect_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ConnectionFailedError(f"Dial error: timed out connecting to {target.address}") from exc
        except OSError as exc:
            raise ConnectionFailedError(f"Dial error: {exc}") from exc
