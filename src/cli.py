#!/usr/bin/env python3
"""CLI entry point for strata.

Verb subcommands:
- strata validate -f stack.yaml
- strata plan -f stack.yaml --out plan.json
- strata apply --plan plan.json --yes

Verbs:
- validate: Check a resource document and its dependency graph
- plan: Show the changes needed to reach the declared state
- apply: Apply a document or a saved plan
- destroy: Delete the resources a document declares
- refresh: Reconcile state with providers
- state: Inspect or edit workspace state (list/show/rm)
- output: Show document outputs
"""

import logging
import subprocess
import sys
from pathlib import Path

# Verb commands
VERB_COMMANDS = {
    "validate": "Check a resource document and its dependency graph",
    "plan": "Show the changes needed to reach the declared state",
    "apply": "Apply a resource document or a saved plan",
    "destroy": "Delete the resources a document declares",
    "refresh": "Reconcile state with what providers report",
    "state": "Inspect or edit workspace state (list/show/rm)",
    "output": "Show document outputs resolved against state",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def dispatch_verb(verb: str, argv: list) -> int:
    """Dispatch to verb-specific CLI handler.

    Args:
        verb: The verb command (e.g., "plan", "apply")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    from engine import cli as engine_cli

    handlers = {
        "validate": engine_cli.validate_main,
        "plan": engine_cli.plan_main,
        "apply": engine_cli.apply_main,
        "destroy": engine_cli.destroy_main,
        "refresh": engine_cli.refresh_main,
        "state": engine_cli.state_main,
        "output": engine_cli.output_main,
    }
    rc: int = handlers[verb](argv)
    return rc


def get_version():
    """Get version from git tags, falling back to 'dev'."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


def print_usage():
    """Print top-level usage."""
    print("Usage: strata <verb> [options]")
    print()
    print("Verbs:")
    for verb, description in VERB_COMMANDS.items():
        print(f"  {verb:10} {description}")
    print()
    print("Run 'strata <verb> --help' for verb-specific options.")


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0 if argv else 1

    if argv[0] == '--version':
        print(f"strata {get_version()}")
        return 0

    verb = argv[0]
    if verb not in VERB_COMMANDS:
        print(f"Error: Unknown verb '{verb}'", file=sys.stderr)
        print(f"Available verbs: {', '.join(VERB_COMMANDS)}", file=sys.stderr)
        return 2

    return dispatch_verb(verb, argv[1:])


if __name__ == '__main__':
    sys.exit(main())
