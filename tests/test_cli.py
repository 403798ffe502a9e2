from __future__ import annotations

import logging
from pathlib import Path
from unittest.mock import AsyncMock

import asyncssh
import pytest

from sshtokenlogin import cli
from tests.utils import FakeAgent


@pytest.fixture(autouse=True)
def _log_to_tmp(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("SSHTOKENLOGIN_LOG_DIR", str(tmp_path / "logs"))
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def _write_config(tmp_path: Path) -> Path:
    ca_line = asyncssh.generate_private_key("ssh-ed25519").export_public_key().decode("ascii").strip()
    path = tmp_path / "config.yaml"
    path.write_text(
        f'listen_addresses: ["127.0.0.1:0"]\nservers:\n  default:\n    host: "127.0.0.1:1"\n    user: alice\n'
        f'    ca_keys: "{ca_line}"\n',
        encoding="utf-8",
    )
    return path


def test_parser_accepts_single_dash_config():
    args = cli.build_parser().parse_args(["-config", "/tmp/x.yaml", "a", "b"])

    assert args.config == "/tmp/x.yaml"
    assert args.servers == ["a", "b"]
    assert not args.verbose


def test_parser_defaults_to_platform_config():
    args = cli.build_parser().parse_args([])

    assert args.config.endswith("sshtokenlogin.yaml")
    assert args.servers == []


@pytest.mark.asyncio
async def test_missing_config_exits_nonzero(tmp_path: Path, capsys):
    code = await cli.main(["sshtokenlogin", "-config", str(tmp_path / "missing.yaml")])

    assert code == 1
    assert "Loading settings:" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_unknown_server_exits_nonzero(tmp_path: Path, capsys):
    code = await cli.main(["sshtokenlogin", "-config", str(_write_config(tmp_path)), "nope"])

    assert code == 1
    assert "Server 'nope' not present in config" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_missing_agent_socket(tmp_path: Path, monkeypatch, capsys):
    monkeypatch.delenv("SSH_AUTH_SOCK", raising=False)

    code = await cli.main(["sshtokenlogin", "-config", str(_write_config(tmp_path))])

    assert code == 1
    assert "SSH_AUTH_SOCK not set" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_run_wires_proxy_and_listener(tmp_path: Path, monkeypatch):
    seen: dict[str, object] = {}

    async def fake_run(self, names):
        seen["names"] = list(names)
        seen["agent_path"] = self._agent_path
        seen["redirect_uri"] = self._redirect_uri

    monkeypatch.setattr(cli.SessionOrchestrator, "run", fake_run)
    async with FakeAgent() as agent:
        monkeypatch.setenv("SSH_AUTH_SOCK", agent.path)
        code = await cli.main(["sshtokenlogin", "-config", str(_write_config(tmp_path))])

    assert code == 0
    assert seen["names"] == ["default"]
    assert seen["agent_path"] != agent.path
    assert not Path(str(seen["agent_path"])).exists()
    assert str(seen["redirect_uri"]).startswith("http://127.0.0.1:")
    assert str(seen["redirect_uri"]).endswith("/callback")


def test_main_entry_maps_interrupt(monkeypatch):
    monkeypatch.setattr(cli, "main", AsyncMock(side_effect=KeyboardInterrupt))

    assert cli.main_entry() == 130
