"""Entry point for `python -m agentrelay` / `agentrelay`."""

from __future__ import annotations

import argparse
import asyncio


def _run() -> None:
    from agentrelay.app import RelayApp

    app = RelayApp()
    asyncio.run(app.run())


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="agentrelay",
        description="Relay chat groups and scheduled tasks to sandboxed AI agents",
    )
    parser.parse_args()
    _run()


if __name__ == "__main__":
    main()
