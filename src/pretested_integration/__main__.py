"""Module entrypoint for ``python -m pretested_integration``."""

from __future__ import annotations

from pretested_integration.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
