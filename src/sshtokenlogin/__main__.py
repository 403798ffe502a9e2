"""Module entrypoint for `python -m sshtokenlogin`."""

from __future__ import annotations

from sshtokenlogin.cli import main_entry

if __name__ == "__main__":
    raise SystemExit(main_entry())
