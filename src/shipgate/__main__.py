"""Module entrypoint for ``python -m shipgate``."""

from __future__ import annotations

from shipgate.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
