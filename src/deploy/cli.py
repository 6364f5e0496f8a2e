"""CLI handlers for deployment verbs (apply, plan, rerun, validate).

Usage:
    thinkdeploy deploy apply -D <desired.yaml> [--allow-destroy] [--force-recreate]
                             [--dry-run] [--skip-preflight] [--json-output] [--verbose]
    thinkdeploy deploy plan -D <desired.yaml> [--json-output]
    thinkdeploy deploy rerun [--allow-destroy] [--json-output]
    thinkdeploy deploy validate -D <desired.yaml>
"""

import argparse
import dataclasses
import json
import logging
import signal
import sys
import threading
from pathlib import Path

from cluster import apply_cluster_fact, detect_cluster_fact
from config import DriverConfig, load_config
from deploy.orchestrator import DeploymentOrchestrator, DeploymentOutcome
from deploy.persistence import DesiredStateStore
from desired_state import ConnectionConfig, DesiredStateDocument, load_collected
from engine.snapshot import AppliedStateSnapshot, read_applied_snapshot
from engine.tofu import ApplyEngine
from errors import ConnectivityError, DriverError, StateQueryError
from platform_query import make_platform_query
from reconcile.merge import MergedDesiredState, merge
from reporting.report import DeploymentReport
from validation import format_preflight_results, run_preflight_checks

logger = logging.getLogger(__name__)


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with options shared by all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'thinkdeploy deploy {verb}',
        description=description,
    )
    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='Driver config file (default: thinkdeploy.yaml in the engine root)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--log-file',
        type=Path,
        help='Also write logs to this file',
    )
    return parser


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--allow-destroy',
        action='store_true',
        help='Allow destructive changes (same as THINKDEPLOY_ALLOW_DESTROY=true)',
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Plan and run the safety guard without applying',
    )
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip pre-flight platform checks',
    )
    parser.add_argument(
        '--strict-preflight',
        action='store_true',
        help='Stop when a pre-flight check fails',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )


def _setup_logging(verbose: bool, json_output: bool = False, log_file: Path = None) -> None:
    """Configure logging based on flags."""
    root_logger = logging.getLogger()
    formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )
    if json_output:
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        root_logger.addHandler(stderr_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    if verbose:
        root_logger.setLevel(logging.DEBUG)


def _install_cancel_handler(cancel_event: threading.Event) -> None:
    """First Ctrl-C stops the pipeline between stages; the second aborts."""
    def handler(_signum, _frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        logger.warning("Interrupt received; stopping after the current stage (Ctrl-C again to abort)")
        cancel_event.set()

    signal.signal(signal.SIGINT, handler)


def _default_connection(config: DriverConfig) -> ConnectionConfig:
    return ConnectionConfig(host=config.ssh_host, user=config.ssh_user, credential_path=config.ssh_key)


def read_applied_or_empty(engine: ApplyEngine) -> AppliedStateSnapshot:
    """Read applied state, treating any failure as a first run."""
    try:
        return read_applied_snapshot(engine)
    except (StateQueryError, ConnectivityError) as e:
        logger.warning(f"Could not read applied state, treating as first run: {e}")
        return AppliedStateSnapshot.empty()


def prepare(doc: DesiredStateDocument, config: DriverConfig, engine: ApplyEngine,
            force_recreate: bool = False) -> tuple[MergedDesiredState, AppliedStateSnapshot, object]:
    """Merge with applied state and resolve cluster intent.

    Returns:
        (merged, applied, platform query)
    """
    doc = dataclasses.replace(doc, connection=doc.connection.validate())
    applied = read_applied_or_empty(engine)
    merged = merge(doc, applied, force_recreate=force_recreate)

    query = make_platform_query(config, doc.connection)
    fact = detect_cluster_fact(query)
    merged = dataclasses.replace(merged, document=apply_cluster_fact(merged.document, fact))
    return merged, applied, query


def _run_preflight(args, config: DriverConfig, query, merged: MergedDesiredState,
                   applied: AppliedStateSnapshot) -> int | None:
    """Run preflight checks.

    Returns:
        None to continue, exit code (1) to stop.
    """
    if args.skip_preflight:
        return None
    host = merged.document.connection.host
    all_passed, results = run_preflight_checks(query, merged.document, applied, config, host=host)
    if all_passed:
        logger.info("Pre-flight validation passed")
        return None
    print(format_preflight_results(host, results, strict=args.strict_preflight),
          file=sys.stderr if args.json_output else sys.stdout)
    if args.strict_preflight:
        print("Error: pre-flight checks failed", file=sys.stderr)
        return 1
    logger.warning("Pre-flight checks reported issues, continuing anyway")
    return None


def _emit_json(outcome: DeploymentOutcome, report: DeploymentReport, merged: MergedDesiredState) -> None:
    """Emit structured JSON output."""
    data = report.to_dict()
    data.update({
        'state': outcome.state,
        'stage': outcome.stage,
        'plan': outcome.plan_outcome,
        'artifact': str(outcome.artifact) if outcome.artifact else None,
        'preserved': [f"{c}/{k}" for c, k in merged.preserved],
        'skipped': [f"{c}/{k}" for c, k, _ in merged.skipped],
        'verified': outcome.verified,
    })
    if outcome.verdict is not None:
        data['destructive'] = [f"{c}/{k}" for c, k in outcome.verdict.destructive_keys]
    if outcome.error is not None:
        data['error'] = str(outcome.error)
    print(json.dumps(data, indent=2))


def _print_summary(outcome: DeploymentOutcome, merged: MergedDesiredState) -> None:
    print("")
    print(f"Deployment {outcome.state} (last stage: {outcome.stage})")
    if merged.preserved:
        print(f"  Preserved from state: {', '.join(f'{c}/{k}' for c, k in merged.preserved)}")
    if outcome.plan_outcome:
        print(f"  Plan: {outcome.plan_outcome}")
    for category, count in outcome.verified.items():
        print(f"  {category}: {count} applied")
    for warning in outcome.warnings:
        print(f"  WARNING: {warning}")
    if outcome.artifact:
        print(f"  Desired state: {outcome.artifact}")


def _deploy(args, doc: DesiredStateDocument, config: DriverConfig, cancel_event: threading.Event) -> int:
    engine = ApplyEngine(config.engine_root, binary=config.engine_binary, timeouts=config.timeouts)
    store = DesiredStateStore(config.engine_root)

    force_recreate = getattr(args, 'force_recreate', False) or config.force_recreate
    merged, applied, query = prepare(doc, config, engine, force_recreate=force_recreate)

    rc = _run_preflight(args, config, query, merged, applied)
    if rc is not None:
        return rc

    report = DeploymentReport(
        target=merged.document.connection.host,
        report_dir=config.reports_dir,
        run_name='dry-run' if args.dry_run else 'deploy',
    )
    orchestrator = DeploymentOrchestrator(engine, store, report=report, cancel_event=cancel_event)
    outcome = orchestrator.run(
        merged, applied,
        allow_destroy=args.allow_destroy or config.allow_destroy,
        dry_run=args.dry_run,
    )

    if args.json_output:
        _emit_json(outcome, report, merged)
    else:
        _print_summary(outcome, merged)
    if outcome.error is not None:
        print(f"Error: {outcome.error}", file=sys.stderr)
    return 0 if outcome.success else 1


def apply_main(argv: list, dry_run: bool = False) -> int:
    """Merge, guard, and apply a collected desired state."""
    verb = 'plan' if dry_run else 'apply'
    parser = _common_parser(verb, 'Deploy a collected desired state')
    parser.add_argument(
        '--desired', '-D',
        type=Path,
        required=True,
        help='Collector output (YAML or JSON)',
    )
    parser.add_argument(
        '--force-recreate',
        action='store_true',
        help='Issue a fresh re-apply token so every VM is recreated '
             '(same as THINKDEPLOY_FORCE_VM_RECREATE=true)',
    )
    _add_run_options(parser)
    args = parser.parse_args(argv)
    if dry_run:
        args.dry_run = True

    _setup_logging(args.verbose, args.json_output, args.log_file)
    cancel_event = threading.Event()
    _install_cancel_handler(cancel_event)

    try:
        config = load_config(args.config)
        doc = load_collected(args.desired, _default_connection(config))
        return _deploy(args, doc, config, cancel_event)
    except DriverError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def plan_main(argv: list) -> int:
    """Dry run: everything up to and including the safety guard."""
    return apply_main(argv, dry_run=True)


def rerun_main(argv: list) -> int:
    """Redeploy the most recent desired state artifact."""
    parser = _common_parser('rerun', 'Redeploy the last persisted desired state')
    parser.add_argument(
        '--artifact',
        type=Path,
        help='Artifact to redeploy (default: the one named by .thinkdeploy_last_tfvars)',
    )
    _add_run_options(parser)
    args = parser.parse_args(argv)

    _setup_logging(args.verbose, args.json_output, args.log_file)
    cancel_event = threading.Event()
    _install_cancel_handler(cancel_event)

    try:
        config = load_config(args.config)
        store = DesiredStateStore(config.engine_root)
        doc = store.read(args.artifact)
        logger.info(f"Redeploying {args.artifact or store.last_artifact()}")
        return _deploy(args, doc, config, cancel_event)
    except DriverError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def validate_main(argv: list) -> int:
    """Validate a collected desired state without touching the platform."""
    parser = _common_parser('validate', 'Validate a collected desired state')
    parser.add_argument(
        '--desired', '-D',
        type=Path,
        required=True,
        help='Collector output (YAML or JSON)',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, log_file=args.log_file)

    try:
        config = load_config(args.config)
        doc = load_collected(args.desired, _default_connection(config))
        connection = doc.connection.validate()
        DesiredStateStore(config.engine_root).serialize(dataclasses.replace(doc, connection=connection))
    except DriverError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Desired state: {args.desired}")
    for category in doc.content_categories():
        print(f"  {category}: {len(doc.records(category))}")
    if not doc.content_categories():
        print("  (empty: a deployment would be blocked)")
    print(f"  connection: {connection.user}@{connection.host} (key {connection.credential_path})")
    print("Valid")
    return 0
