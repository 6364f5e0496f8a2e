#!/usr/bin/env python3
"""CLI entry point for thinkdeploy.

Noun-action subcommands:
- deploy: Desired state lifecycle (apply/plan/rerun/validate)
- cluster: Platform cluster facts (detect)
- state: Applied state inspection (list)
"""

import argparse
import dataclasses
import json
import logging
import subprocess
import sys
from pathlib import Path

from cluster import detect_cluster_fact
from config import load_config
from desired_state import CATEGORIES, ConnectionConfig
from engine.snapshot import read_applied_snapshot
from engine.tofu import ApplyEngine
from errors import DriverError
from platform_query import make_platform_query

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "deploy": "Desired state lifecycle (apply/plan/rerun/validate)",
    "cluster": "Platform cluster facts (detect)",
    "state": "Applied state inspection (list)",
}

DEPLOY_ACTIONS = {
    "apply": "Merge, guard, and apply a collected desired state",
    "plan": "Plan and run the safety guard without applying",
    "rerun": "Redeploy the last persisted desired state",
    "validate": "Validate a collected desired state",
}


def get_version():
    """Get version from git tags (do not use hardcoded VERSION constant)."""
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


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def _print_actions(noun: str, actions: dict) -> None:
    print(f"Usage: thinkdeploy {noun} <action> [options]")
    print()
    print("Actions:")
    for action, desc in actions.items():
        print(f"  {action:<10} {desc}")
    print()
    print(f"Run 'thinkdeploy {noun} <action> --help' for action-specific options.")


def dispatch_deploy(argv: list) -> int:
    """Dispatch 'deploy' noun to action-specific handler."""
    if not argv or argv[0].startswith('-'):
        _print_actions('deploy', DEPLOY_ACTIONS)
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]

    if action == "apply":
        from deploy.cli import apply_main
        return apply_main(rest)
    if action == "plan":
        from deploy.cli import plan_main
        return plan_main(rest)
    if action == "rerun":
        from deploy.cli import rerun_main
        return rerun_main(rest)
    if action == "validate":
        from deploy.cli import validate_main
        return validate_main(rest)

    print(f"Error: Unknown deploy action '{action}'")
    print(f"Available actions: {', '.join(DEPLOY_ACTIONS)}")
    return 1


def _query_parser(prog: str, description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=prog, description=description)
    parser.add_argument('--config', '-c', type=Path, help='Driver config file')
    parser.add_argument('--json-output', action='store_true', help='Output structured JSON to stdout')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    return parser


def cluster_detect_main(argv: list) -> int:
    """Detect whether the target platform is part of a cluster."""
    parser = _query_parser('thinkdeploy cluster detect', 'Detect Proxmox cluster membership')
    args = parser.parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = load_config(args.config)
        connection = ConnectionConfig(config.ssh_host, config.ssh_user, config.ssh_key)
        fact = detect_cluster_fact(make_platform_query(config, connection))
    except DriverError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json_output:
        print(json.dumps(dataclasses.asdict(fact), indent=2))
    else:
        print(fact.describe())
    return 0


def state_list_main(argv: list) -> int:
    """List applied resources grouped by category."""
    parser = _query_parser('thinkdeploy state list', 'List applied resources')
    args = parser.parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = load_config(args.config)
        engine = ApplyEngine(config.engine_root, binary=config.engine_binary, timeouts=config.timeouts)
        snapshot = read_applied_snapshot(engine, with_attributes=False)
    except DriverError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    grouped = {category: snapshot.keys(category) for category in CATEGORIES if snapshot.keys(category)}
    if args.json_output:
        print(json.dumps(grouped, indent=2))
    elif not grouped:
        print("No applied resources")
    else:
        for category, keys in grouped.items():
            print(f"{category}:")
            for key in keys:
                print(f"  {key}")
    return 0


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "deploy", "cluster")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if noun == "deploy":
        return dispatch_deploy(argv)

    if noun == "cluster":
        if argv and argv[0] == "detect":
            return cluster_detect_main(argv[1:])
        _print_actions('cluster', {"detect": "Detect Proxmox cluster membership"})
        return 1

    if noun == "state":
        if argv and argv[0] == "list":
            return state_list_main(argv[1:])
        _print_actions('state', {"list": "List applied resources"})
        return 1

    print(f"Error: Unknown noun '{noun}'")
    return 1


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"thinkdeploy {get_version()}")
    print()
    print("Usage: thinkdeploy <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'thinkdeploy <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  thinkdeploy deploy apply -D desired.yaml")
    print("  thinkdeploy deploy plan -D desired.yaml --json-output")
    print("  THINKDEPLOY_ALLOW_DESTROY=true thinkdeploy deploy rerun")
    print("  thinkdeploy cluster detect")
    print("  thinkdeploy state list")


def main(argv: list = None) -> int:
    """CLI entry point: dispatch to noun-action handlers."""
    argv = sys.argv[1:] if argv is None else argv

    if not argv:
        print_usage()
        return 0

    first_arg = argv[0]
    if first_arg in ('--version', '-V'):
        print(f"thinkdeploy {get_version()}")
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
