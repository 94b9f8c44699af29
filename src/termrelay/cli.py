"""Command-line interface for termrelay.

Provides the main entry point for running the gateway server, and a
spawn check for verifying that the configured CLI can be launched.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="termrelay",
        description="Per-client interactive CLI sessions over WebSockets",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration file (default: config/termrelay.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Start the WebSocket gateway")
    serve_parser.add_argument("--host", type=str, default=None, help="Override server.host")
    serve_parser.add_argument("--port", type=int, default=None, help="Override server.port")

    subparsers.add_parser(
        "spawn-test",
        help="Try to spawn the configured command and report the session mode",
    )

    return parser.parse_args(argv)


async def _spawn_test(settings) -> bool:
    """Spawn the configured command once, then kill it.

    Returns:
        True if a real process could be started.
    """
    from termrelay.process.base import SpawnError
    from termrelay.process.child import spawn_child

    config = settings.process
    output: list[str] = []
    print(f"Spawning: {config.command} {' '.join(config.args)}".rstrip())
    try:
        handle = await spawn_child(config, output.append, lambda status: None)
    except SpawnError as e:
        print(f"FAILED -- {e}")
        print("Sessions will run in fallback mode with simulated responses.")
        return False

    await asyncio.sleep(0.5)
    handle.kill()
    await handle.wait()
    print(f"OK -- started pid {handle.pid}, received {sum(len(chunk) for chunk in output)} chars of output.")
    print("Sessions will be backed by real processes.")
    return True


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the termrelay CLI."""
    args = parse_args(argv)

    if args.command is None:
        parse_args(["--help"])
        return

    from termrelay.config.settings import load_settings
    from termrelay.utils.logging import setup_logging

    settings = load_settings(args.config)

    if args.verbose:
        settings.logging.level = "DEBUG"

    setup_logging(settings.logging)

    if args.command == "serve":
        from termrelay.gateway.server import create_app, serve

        host = args.host or settings.server.host
        port = args.port or settings.server.port
        logger.info("Starting gateway on %s:%d", host, port)
        app = create_app(settings)
        serve(app, settings, host=host, port=port)

    elif args.command == "spawn-test":
        logger.info("Running spawn test")
        ok = asyncio.run(_spawn_test(settings))
        if not ok:
            raise SystemExit(1)


if __name__ == "__main__":
    main()
