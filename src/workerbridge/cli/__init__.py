"""CLI entry point for workerbridge.

Provides command-line interface for:
- Validating runner configuration files
- Displaying version information

Usage:
    workerbridge validate -c runner.yaml
    workerbridge version
"""

import argparse
import sys
from typing import List, Optional


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser."""
    parser = argparse.ArgumentParser(
        prog="workerbridge",
        description="Drive external worker processes over local sockets",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Show version and exit",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # validate command
    validate_parser = subparsers.add_parser(
        "validate",
        help="Validate a configuration file",
    )
    validate_parser.add_argument(
        "-c", "--config",
        required=True,
        help="Path to YAML configuration file",
    )

    # version command
    subparsers.add_parser(
        "version",
        help="Show version information",
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:]).

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.version:
        from workerbridge.cli.commands.version import cmd_version
        return cmd_version()

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "validate":
        from workerbridge.cli.commands.validate import cmd_validate
        return cmd_validate(config_path=args.config)

    elif args.command == "version":
        from workerbridge.cli.commands.version import cmd_version
        return cmd_version()

    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
