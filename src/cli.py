#!/usr/bin/env python3
"""CLI entry point for stackplan.

Noun-action subcommands:
- stackplan stack plan -S blog-backend
- stackplan stack apply -S blog-backend --concurrency 4
- stackplan state show -S blog-backend

Nouns:
- stack: Resource lifecycle (plan/apply/destroy/validate)
- state: State record utilities (show/unlock)
"""

import logging
import sys
from importlib import metadata
from typing import Optional

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "stack": "Resource lifecycle (plan/apply/destroy/validate)",
    "state": "State record utilities (show/unlock)",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version() -> str:
    """Get the installed package version ('dev' when running from a checkout)."""
    try:
        return metadata.version('stackplan')
    except metadata.PackageNotFoundError:
        return 'dev'


def dispatch_stack(argv: list) -> int:
    """Dispatch 'stack' noun to action-specific handler.

    Args:
        argv: Arguments after 'stack' (e.g., ['apply', '-S', 'blog-backend'])

    Returns:
        Exit code
    """
    if not argv or argv[0].startswith('-'):
        print("Usage: stackplan stack <action> [options]")
        print()
        print("Actions:")
        print("  plan      Show the changes apply would make")
        print("  apply     Create, update and delete resources to match the stack")
        print("  destroy   Delete every resource tracked for the stack")
        print("  validate  Validate declarations, references and dependencies")
        print()
        print("Run 'stackplan stack <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]

    if action == "plan":
        from stack_opr.cli import plan_main
        rc: int = plan_main(rest)
        return rc
    if action == "apply":
        from stack_opr.cli import apply_main
        rc = apply_main(rest)
        return rc
    if action == "destroy":
        from stack_opr.cli import destroy_main
        rc = destroy_main(rest)
        return rc
    if action == "validate":
        from stack_opr.cli import validate_main
        rc = validate_main(rest)
        return rc

    print(f"Error: Unknown stack action '{action}'")
    print("Available actions: plan, apply, destroy, validate")
    return 1


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "stack", "state")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if noun == "stack":
        return dispatch_stack(argv)

    if noun == "state":
        from stack_opr.cli import state_main
        rc: int = state_main(argv)
        return rc

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


def print_usage():
    """Print top-level usage showing noun commands."""
    from stack_opr.cli import available_stacks

    print(f"stackplan {get_version()}")
    print()
    print("Usage: stackplan <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'stackplan <noun> --help' for command-specific options.")
    stacks = available_stacks()
    if stacks:
        print()
        print(f"Available stacks: {', '.join(stacks)}")
    print()
    print("Examples:")
    print("  stackplan stack validate -S blog-backend")
    print("  stackplan stack plan -S blog-backend")
    print("  stackplan stack apply -S blog-backend --concurrency 4")
    print("  stackplan stack destroy -S blog-backend --yes")
    print("  stackplan state show -S blog-backend")


def main(argv: Optional[list] = None) -> int:
    """CLI entry point: dispatch to noun-action handlers."""
    if argv is None:
        argv = sys.argv[1:]

    if not argv:
        print_usage()
        return 0

    first_arg = argv[0]
    if first_arg in ('--version', '-V'):
        print(f"stackplan {get_version()}")
        return 0
    if first_arg in ('--help', '-h'):
        print_usage()
        return 0
    if first_arg in NOUN_COMMANDS:
        return dispatch_noun(first_arg, argv[1:])

    print(f"Error: Unknown command '{first_arg}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
