from __future__ import annotations

import asyncssh
import pytest

from sshtokenlogin.errors import ConfigError
from sshtokenlogin.keys import AuthorizedKeySet, parse_authorized_keys


def _line(key: asyncssh.SSHKey) -> str:
    return key.export_public_key().decode("ascii").strip()


def test_parse_skips_blank_lines_and_comments(ed25519_key, ca_key):
    text = f"# trusted hosts\n\n{_line(ed25519_key)}\n   \n{_line(ca_key)}\n"

    keys = parse_authorized_keys(text)

    assert len(keys) == 2
    assert ed25519_key.convert_to_public() in keys
    assert ca_key.public_data in keys


def test_parse_accepts_options_prefix(ed25519_key):
    text = f'cert-authority,principals="a b" {_line(ed25519_key)}'

    assert ed25519_key.public_data in parse_authorized_keys(text)


def test_parse_accepts_bytes(ed25519_key):
    assert len(parse_authorized_keys(_line(ed25519_key).encode())) == 1


@pytest.mark.parametrize("text", [None, "", "# only a comment\n"])
def test_parse_empty_input(text):
    keys = parse_authorized_keys(text)
    assert not keys
    assert len(keys) == 0


def test_parse_error_names_offending_line(ed25519_key):
    with pytest.raises(ConfigError, match='Error parsing public key "not-a-key"'):
        parse_authorized_keys(f"{_line(ed25519_key)}\nnot-a-key\n")


def test_membership_compares_wire_encoding(ed25519_key):
    keys = AuthorizedKeySet.of([ed25519_key.convert_to_public()])
    other = asyncssh.generate_private_key("ssh-ed25519")

    assert ed25519_key.public_data in keys
    assert other.public_data not in keys
    assert "not a key" not in keys
    assert [key.public_data for key in keys] == [ed25519_key.public_data]
