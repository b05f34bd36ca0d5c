"""Command-line interface for termbroker.

Provides the entry point for starting the broker server and for checking
which shell new sessions would run.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="termbroker",
        description="Session-multiplexing terminal broker",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration file (default: config/termbroker.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Start the broker server")
    serve_parser.add_argument("--host", type=str, default=None, help="Bind address")
    serve_parser.add_argument("--port", type=int, default=None, help="Listening port")
    serve_parser.add_argument(
        "--static-dir", type=str, default=None,
        help="Directory of the prebuilt client bundle to serve",
    )

    subparsers.add_parser("which-shell", help="Print the shell new sessions would run")

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the termbroker CLI. Returns the exit code."""
    args = parse_args(argv)

    if args.command is None:
        parse_args(["--help"])
        return 0

    from termbroker.config.settings import load_settings
    from termbroker.utils.logging import setup_logging

    settings = load_settings(args.config)

    if args.verbose:
        settings.logging.level = "DEBUG"

    setup_logging(settings.logging)

    if args.command == "serve":
        from termbroker.server import main as serve

        if args.host:
            settings.server.host = args.host
        if args.port:
            settings.server.port = args.port
        if args.static_dir:
            settings.server.static_dir = args.static_dir
        logger.info("Starting broker server")
        return serve(settings)

    if args.command == "which-shell":
        from termbroker.broker.shell import resolve_shell, shell_candidates

        default_shell = settings.terminal.default_shell
        print(resolve_shell(default_shell=default_shell))
        if args.verbose:
            for candidate in shell_candidates(default_shell=default_shell):
                print(f"  candidate: {candidate}")
        return 0

    return 0


if __name__ == "__main__":
    sys.exit(main())
