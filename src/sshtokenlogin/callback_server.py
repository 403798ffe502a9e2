"""Local HTTP endpoint that receives the authorization code from the browser."""

from __future__ import annotations

import asyncio
import html
import logging
import socket
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Sequence
from urllib.parse import parse_qs, urlparse

from sshtokenlogin.errors import NoBindableAddressError
from sshtokenlogin.log_utils import log_event
from sshtokenlogin.settings import split_host_port

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/callback"
_WILDCARD_HOSTS = {"", "0.0.0.0", "::"}

# Browsers do not let a page close its own tab, so just say what happened.
_HTML_SUCCESS = "<p>Code accepted</p>"


def _html_error(message: str) -> str:
    return f"<p>{html.escape(message)}</p>"


@dataclass(frozen=True)
class AuthorizationResponse:
    code: str
    state: str


class ResponseHandoff:
    """Single-slot hand-off from the HTTP handler to one waiting login round.

    At most one consumer waits at a time. A response offered while nobody is
    waiting (or after the slot was already filled) is dropped, never queued
    for a later round.

    A round arms the slot with :meth:`expect` before it sends the user to the
    browser, so a redirect that lands while the browser launch is still in
    progress is kept.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._waiter: asyncio.Future[AuthorizationResponse] | None = None

    @property
    def waiting(self) -> bool:
        return self._waiter is not None and not self._waiter.done()

    def expect(self) -> asyncio.Future[AuthorizationResponse]:
        """Arm the slot and return the future the next response resolves."""
        if self.waiting:
            raise RuntimeError("another login round is already waiting for a callback")
        waiter: asyncio.Future[AuthorizationResponse] = self._loop.create_future()
        self._waiter = waiter
        return waiter

    def release(self, waiter: asyncio.Future[AuthorizationResponse]) -> None:
        """Disarm ``waiter``; safe to call more than once."""
        if self._waiter is waiter:
            self._waiter = None
        if not waiter.done():
            waiter.cancel()

    async def receive(self) -> AuthorizationResponse:
        waiter = self.expect()
        try:
            return await waiter
        finally:
            self.release(waiter)

    def offer(self, response: AuthorizationResponse) -> bool:
        """Deliver ``response`` to the waiting round. Must run on the loop thread."""
        waiter = self._waiter
        if waiter is None or waiter.done():
            log_event(logger, "callback.dropped", level=logging.WARNING, reason="no login round waiting")
            return False
        waiter.set_result(response)
        return True

    def offer_threadsafe(self, response: AuthorizationResponse) -> None:
        self._loop.call_soon_threadsafe(self.offer, response)


class _CallbackHTTPServer(ThreadingHTTPServer):
    daemon_threads = True


class _CallbackHTTPServerV6(_CallbackHTTPServer):
    address_family = socket.AF_INET6


class CallbackListener:
    """Bind the first usable address and serve the OAuth redirect endpoint.

    The server keeps running for the life of the process: each server in a
    multi-target run needs its own browser round-trip through the same
    redirect URI.
    """

    def __init__(
        self,
        handoff: ResponseHandoff,
        *,
        path: str = CALLBACK_PATH,
        redirect_host: str | None = None,
        success_html: str = _HTML_SUCCESS,
        error_html: Callable[[str], str] = _html_error,
    ) -> None:
        self._handoff = handoff
        self._path = path
        self._redirect_host = redirect_host
        self._success_html = success_html
        self._error_html = error_html
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._redirect_uri: str | None = None

    @property
    def redirect_uri(self) -> str:
        if not self._redirect_uri:
            raise RuntimeError("Callback listener not started.")
        return self._redirect_uri

    @property
    def port(self) -> int:
        if self._server is None:
            raise RuntimeError("Callback listener not started.")
        return int(self._server.server_address[1])

    def start(self, listen_addresses: Sequence[str]) -> str:
        """Bind the first address that works and return the redirect URI."""
        if self._server is not None:
            return self.redirect_uri

        for address in listen_addresses:
            try:
                host, port = split_host_port(address, default_port=80)
            except ValueError as exc:
                log_event(logger, "callback.bad_address", level=logging.WARNING, address=address, error=str(exc))
                continue
            server_cls = _CallbackHTTPServerV6 if ":" in host else _CallbackHTTPServer
            try:
                server = server_cls((host, port), self._handler_class())
            except OSError as exc:
                log_event(logger, "callback.bind_failed", level=logging.DEBUG, address=address, error=str(exc))
                continue
            self._server = server
            self._redirect_uri = self._build_redirect_uri(host)
            break
        else:
            raise NoBindableAddressError("Unable to bind to any listen address")

        thread = threading.Thread(target=self._server.serve_forever, name="sshtokenlogin-callback", daemon=True)
        thread.start()
        self._thread = thread
        log_event(logger, "callback.listening", redirect_uri=self._redirect_uri)
        return self.redirect_uri

    def _build_redirect_uri(self, bound_host: str) -> str:
        host = self._redirect_host or bound_host
        if host in _WILDCARD_HOSTS:
            host = "localhost"
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"
        return f"http://{host}:{self.port}{self._path}"

    def _handler_class(self) -> type[BaseHTTPRequestHandler]:
        outer = self

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                parsed = urlparse(self.path)
                if parsed.path != outer._path:
                    self.send_response(404)
                    self.end_headers()
                    return

                query = parse_qs(parsed.query)
                code = query.get("code", [""])[0]
                state = query.get("state", [""])[0]
                if not code:
                    error = query.get("error_description", query.get("error", [""]))[0]
                    message = f"Missing response code ({error})" if error else "Missing response code"
                    log_event(logger, "callback.missing_code", level=logging.WARNING, error=error or None)
                    self._send_html(outer._error_html(message), status=400)
                    return

                self._send_html(outer._success_html, status=200)
                outer._handoff.offer_threadsafe(AuthorizationResponse(code=code, state=state))

            def log_message(self, format: str, *args: object) -> None:  # noqa: A002
                logger.debug("callback %s - %s", self.address_string(), format % args)

            def _send_html(self, body: str, status: int) -> None:
                encoded = body.encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(encoded)))
                self.end_headers()
                self.wfile.write(encoded)

        return Handler

    def close(self) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        self._thread = None
