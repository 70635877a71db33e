"""Module entrypoint for `python -m agentrelay`."""

from __future__ import annotations

from agentrelay.cli import main_entry

if __name__ == "__main__":
    main_entry()
