#!/usr/bin/env python3
"""CLI entry point for stack-driver.

Verbs:
- validate: Check a template without touching state
- plan: Show the changes an apply would make (read-only)
- apply: Plan and apply a template to a stack
- destroy: Delete every recorded resource of a stack
- show: Print recorded state and outputs
- unlock: Clear an inconsistent marker after manual repair
"""

import logging
import sys
from importlib.metadata import PackageNotFoundError, version
from typing import Optional

from stack_opr.cli import VERBS, dispatch

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version() -> str:
    """Get the installed package version."""
    try:
        return version('stack-driver')
    except PackageNotFoundError:
        return 'dev'


def print_usage() -> None:
    """Print top-level usage."""
    print("Usage: stack-driver <verb> [options]")
    print()
    print("Verbs:")
    for verb, (_, summary) in VERBS.items():
        print(f"  {verb:<10}{summary}")
    print()
    print("Run 'stack-driver <verb> --help' for verb-specific options.")


def main(argv: Optional[list] = None) -> int:
    """CLI entry point: dispatch to verb handlers."""
    args = sys.argv[1:] if argv is None else argv

    if not args or args[0] in ('-h', '--help'):
        print_usage()
        return 0

    if args[0] == '--version':
        print(f"stack-driver {get_version()}")
        return 0

    rc = dispatch(args[0], args[1:])
    if rc is None:
        print(f"Error: Unknown command '{args[0]}'")
        print_usage()
        return 1
    return rc


if __name__ == '__main__':
    sys.exit(main())
