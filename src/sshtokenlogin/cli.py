"""Command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from sshtokenlogin import display
from sshtokenlogin.agent_proxy import AgentProxyServer, RestrictedAgentProxy
from sshtokenlogin.callback_server import CallbackListener, ResponseHandoff
from sshtokenlogin.errors import ConfigError, NoBindableAddressError, TokenLoginError
from sshtokenlogin.log_utils import build_log_config, configure_logging, log_event
from sshtokenlogin.paths import config_dir, default_config_path
from sshtokenlogin.session import SessionOrchestrator
from sshtokenlogin.settings import load_settings

logger = logging.getLogger(__name__)

DEFAULT_SERVER = "default"
AGENT_ENV_VAR = "SSH_AUTH_SOCK"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sshtokenlogin",
        description="Log in to SSH certificate servers through your browser.",
    )
    parser.add_argument(
        "-config",
        "--config",
        dest="config",
        default=str(default_config_path()),
        help="Location of YAML config file",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr")
    parser.add_argument("servers", nargs="*", help=f"Servers from the config file (default: {DEFAULT_SERVER})")
    return parser


async def run(config_path: str, servers: list[str]) -> None:
    try:
        settings = load_settings(config_path)
    except ConfigError as exc:
        raise ConfigError(f"Loading settings: {exc}") from exc
    # Surface unknown names before touching the agent or the network
    for name in servers:
        settings.target(name)

    agent_path = os.getenv(AGENT_ENV_VAR)
    if not agent_path:
        raise TokenLoginError(f"{AGENT_ENV_VAR} not set.  This program requires access to an ssh agent")

    proxy = await RestrictedAgentProxy.connect(agent_path)
    proxy_server = AgentProxyServer(proxy)
    listener: CallbackListener | None = None
    try:
        forwarded_path = await proxy_server.start()

        handoff = ResponseHandoff()
        listener = CallbackListener(handoff, redirect_host=settings.redirect_uri_hostname)
        try:
            redirect_uri = listener.start(settings.listen_addresses)
        except NoBindableAddressError as exc:
            raise NoBindableAddressError(f"Failed to start http: {exc}") from exc

        orchestrator = SessionOrchestrator(
            settings,
            agent_path=forwarded_path,
            handoff=handoff,
            redirect_uri=redirect_uri,
        )
        await orchestrator.run(servers)
    finally:
        if listener is not None:
            listener.close()
        await proxy_server.close()
        await proxy.close()


async def main(argv: list[str]) -> int:
    load_dotenv(config_dir() / ".env", override=False)
    args = build_parser().parse_args(argv[1:])
    configure_logging(build_log_config(verbose=args.verbose))

    servers = args.servers or [DEFAULT_SERVER]
    log_event(logger, "run.start", servers=servers, config=args.config)
    try:
        await run(args.config, servers)
    except TokenLoginError as exc:
        log_event(logger, "run.failed", level=logging.ERROR, error=str(exc))
        display.print_error(str(exc))
        return 1
    log_event(logger, "run.done")
    return 0


def main_entry() -> int:
    try:
        return asyncio.run(main(sys.argv))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main_entry())
