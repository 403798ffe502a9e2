"""Keyboard-interactive challenge handling with a browser fast path.

A server that issues certificates against an OpenID Connect provider sends a
single-question challenge whose instruction text contains the provider's
authorization URL. That URL is completed with a ``state`` and our
``redirect_uri``, opened in the browser, and the code delivered to the local
callback listener is returned as the answer. Anything that does not look like
that is asked on the terminal instead.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
import secrets
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence
from urllib.parse import SplitResult, parse_qs, urlencode, urlsplit, urlunsplit

from sshtokenlogin import display
from sshtokenlogin.browser import open_browser
from sshtokenlogin.callback_server import AuthorizationResponse, ResponseHandoff
from sshtokenlogin.errors import BrowserLaunchError
from sshtokenlogin.log_utils import log_event
from sshtokenlogin.terminal import TerminalPrompter

logger = logging.getLogger(__name__)

_URL_RE = re.compile(r"https?://\S+")


class RoundPhase(enum.Enum):
    IDLE = "idle"
    BROWSER_CANDIDATE = "browser-candidate"
    WAITING_FOR_CODE = "waiting-for-code"
    MANUAL = "manual"
    ANSWERED = "answered"


@dataclass(frozen=True)
class PendingChallenge:
    state: str
    redirect_uri: str
    auth_url: str


class Prompter(Protocol):
    def show(self, text: str) -> None: ...

    async def read_line(self, prompt: str) -> str: ...

    async def read_secret(self, prompt: str) -> str: ...


def generate_state() -> str:
    """Random 64-bit state token, hex encoded."""
    return f"{secrets.randbits(64):016X}"


def extract_url(instruction: str) -> SplitResult | None:
    """Pull the first http(s) URL out of a human-readable prompt."""
    match = _URL_RE.search(instruction or "")
    if not match:
        return None
    url = urlsplit(match.group(0))
    if url.scheme not in ("http", "https") or not url.netloc:
        return None
    return url


def _first(query: dict[str, list[str]], name: str) -> str:
    values = query.get(name) or [""]
    return values[0]


def prepare_browser_challenge(
    instruction: str,
    redirect_uri: str,
    *,
    state_factory: Callable[[], str] = generate_state,
) -> PendingChallenge | None:
    """Build the browser URL for an OIDC-shaped instruction, or return None.

    The URL must carry ``client_id`` and ``response_type=code``. A ``state``
    already present in the URL is kept, otherwise a fresh one is generated.
    """
    url = extract_url(instruction)
    if url is None:
        return None
    query = parse_qs(url.query, keep_blank_values=True)
    if not _first(query, "client_id") or _first(query, "response_type") != "code":
        return None

    state = _first(query, "state") or state_factory()
    query["state"] = [state]
    query["redirect_uri"] = [redirect_uri]
    encoded = urlencode(sorted(query.items()), doseq=True)
    auth_url = urlunsplit((url.scheme, url.netloc, url.path, encoded, url.fragment))
    return PendingChallenge(state=state, redirect_uri=redirect_uri, auth_url=auth_url)


class InteractiveAuthBridge:
    """Answer keyboard-interactive rounds via the browser or the terminal.

    One instance serves one connection attempt; :attr:`phase` tracks where the
    current round is.
    """

    def __init__(
        self,
        handoff: ResponseHandoff,
        redirect_uri: str,
        *,
        prompter: Prompter | None = None,
        browser_opener: Callable[[str], None] = open_browser,
        state_factory: Callable[[], str] = generate_state,
    ) -> None:
        self._handoff = handoff
        self.redirect_uri = redirect_uri
        self._prompter: Prompter = prompter or TerminalPrompter()
        self._browser_opener = browser_opener
        self._state_factory = state_factory
        self.phase = RoundPhase.IDLE
        self.pending: PendingChallenge | None = None

    async def respond(
        self,
        name: str,
        instruction: str,
        lang: str,
        prompts: Sequence[tuple[str, bool]],
    ) -> list[str]:
        self.phase = RoundPhase.IDLE
        self.pending = None
        answers = await self.browser_challenge(instruction, prompts)
        if answers is None:
            answers = await self.keyboard_challenge(instruction, prompts)
        self.phase = RoundPhase.ANSWERED
        return answers

    async def browser_challenge(self, instruction: str, prompts: Sequence[tuple[str, bool]]) -> list[str] | None:
        if len(prompts) != 1:
            log_event(logger, "kbdint.manual", reason="question count", questions=len(prompts))
            return None
        challenge = prepare_browser_challenge(instruction, self.redirect_uri, state_factory=self._state_factory)
        if challenge is None:
            log_event(logger, "kbdint.manual", reason="no oidc url")
            return None

        self.phase = RoundPhase.BROWSER_CANDIDATE
        # Armed before the launch: the browser may redirect before it returns
        waiter = self._handoff.expect()
        try:
            try:
                await asyncio.to_thread(self._browser_opener, challenge.auth_url)
            except BrowserLaunchError as exc:
                log_event(logger, "kbdint.browser_failed", level=logging.WARNING, error=str(exc))
                display.print_warning(f"Unable to open browser: {exc}")
                return None

            self.pending = challenge
            self.phase = RoundPhase.WAITING_FOR_CODE
            log_event(logger, "kbdint.browser_opened", redirect_uri=challenge.redirect_uri)
            display.print_notice("Continue the login in your web browser...")
            code = await self.wait_for_code(challenge, waiter)
        finally:
            self._handoff.release(waiter)
        self.pending = None
        return [f"{code} {challenge.redirect_uri}"]

    async def wait_for_code(
        self,
        challenge: PendingChallenge,
        waiter: asyncio.Future[AuthorizationResponse] | None = None,
    ) -> str:
        while True:
            if waiter is None:
                response = await self._handoff.receive()
            else:
                try:
                    response = await waiter
                finally:
                    self._handoff.release(waiter)
                waiter = None
            if not response.code:
                log_event(logger, "callback.missing_code", level=logging.WARNING)
                continue
            if response.state != challenge.state:
                log_event(logger, "callback.unexpected_state", level=logging.WARNING)
                continue
            log_event(logger, "callback.accepted")
            return response.code

    async def keyboard_challenge(self, instruction: str, prompts: Sequence[tuple[str, bool]]) -> list[str]:
        self.phase = RoundPhase.MANUAL
        if instruction:
            self._prompter.show(instruction)
        answers: list[str] = []
        for question, echo in prompts:
            if echo:
                answers.append(await self._prompter.read_line(question))
            else:
                answers.append(await self._prompter.read_secret(question))
        return answers
