from __future__ import annotations

import textwrap
from pathlib import Path

import asyncssh
import pytest

from sshtokenlogin.errors import ConfigError
from sshtokenlogin.settings import DEFAULT_LISTEN_ADDRESSES, load_settings, parse_settings, split_host_port


def _key_line() -> str:
    return asyncssh.generate_private_key("ssh-ed25519").export_public_key().decode("ascii").strip()


def _write(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "sshtokenlogin.yaml"
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


def test_load_full_document(tmp_path: Path):
    ca_line = _key_line()
    path = _write(
        tmp_path,
        f"""
        listen_addresses:
          - "127.0.0.1:8080"
        redirect_uri_hostname: login.example.test
        servers:
          default:
            host: ssh.example.test
            user: alice
            ca_keys: |
              {ca_line}
          other:
            host: "[2001:db8::1]:2222"
            user: bob
            host_keys: "{_key_line()}"
        """,
    )

    settings = load_settings(path)

    assert settings.listen_addresses == ["127.0.0.1:8080"]
    assert settings.redirect_uri_hostname == "login.example.test"
    default = settings.target("default")
    assert (default.host, default.port, default.user) == ("ssh.example.test", 22, "alice")
    assert len(default.trusted_ca_keys) == 1
    assert not default.trusted_host_keys
    other = settings.target("other")
    assert (other.host, other.port) == ("2001:db8::1", 2222)
    assert other.address == "[2001:db8::1]:2222"


def test_listen_addresses_default_to_loopback():
    settings = parse_settings({"servers": {"default": {"host": "h", "user": "u", "ca_keys": _key_line()}}})

    assert settings.listen_addresses == DEFAULT_LISTEN_ADDRESSES


def test_empty_document_has_no_servers():
    settings = parse_settings(None)

    assert settings.servers == {}
    with pytest.raises(ConfigError, match="Server 'default' not present in config"):
        settings.target("default")


@pytest.mark.parametrize(
    ("entry", "message"),
    [
        ({"user": "u", "ca_keys": "x"}, "Server s: missing host"),
        ({"host": "h", "ca_keys": "x"}, "Server s: missing user"),
        ({"host": "h", "user": "u"}, "Server s: must provide host_keys or ca_keys"),
        ({"host": "h", "user": "u", "host_keys": "garbage"}, "Server s: host_keys: Error parsing public key"),
        ({"host": "h:notaport", "user": "u", "ca_keys": "x"}, "Server s: host:"),
    ],
)
def test_invalid_server_entries(entry, message):
    with pytest.raises(ConfigError, match=message):
        parse_settings({"servers": {"s": entry}})


def test_unknown_fields_are_rejected():
    with pytest.raises(ConfigError, match="listen_adresses"):
        parse_settings({"listen_adresses": ["127.0.0.1:0"]})


def test_non_mapping_document():
    with pytest.raises(ConfigError):
        parse_settings(["not", "a", "mapping"])


def test_missing_file(tmp_path: Path):
    with pytest.raises(ConfigError, match="missing.yaml"):
        load_settings(tmp_path / "missing.yaml")


def test_invalid_yaml(tmp_path: Path):
    path = _write(tmp_path, "servers: [unclosed\n")
    with pytest.raises(ConfigError):
        load_settings(path)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("example.test", ("example.test", 22)),
        ("example.test:2200", ("example.test", 2200)),
        ("[::1]:0", ("::1", 0)),
        ("[::1]", ("::1", 22)),
        ("::1", ("::1", 22)),
    ],
)
def test_split_host_port(value, expected):
    assert split_host_port(value) == expected


@pytest.mark.parametrize("value", ["[::1", "host:99999", "[::1]x"])
def test_split_host_port_rejects_malformed(value):
    with pytest.raises(ValueError):
        split_host_port(value)
