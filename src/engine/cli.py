"""CLI handlers for engine verbs (validate, plan, apply, destroy, refresh, state, output).

Usage:
    strata validate -f <document> [--var K=V]...
    strata plan -f <document> [--out PLAN] [--target ADDR]... [--refresh] [--json-output]
    strata apply (-f <document> | --plan PLAN) [--yes] [--target ADDR]... [--report-dir DIR]
    strata destroy -f <document> [--yes] [--target ADDR]...
    strata refresh
    strata state list | show ADDR | rm ADDR
    strata output -f <document> [NAME]

Exit codes: 0 success, 1 failed or partial apply, 2 invalid input, stale or
unreadable state, or bad configuration.
"""

import argparse
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import yaml

from config import ConfigError, EngineConfig, load_engine_config
from engine.differ import DELETE, NO_OP, Plan, compute_destroy_plan, compute_plan
from engine.errors import ConflictError, EngineError, StateError, ValidationError
from engine.executor import Executor, resolve_outputs
from engine.graph import build_graph
from engine.outcome import ApplyResult
from engine.state import StateStore
from providers import HttpProvider, build_registry
from reporting.report import ApplyReport
from resources import ResourceDocument, load_resources
from secret_store import SecretStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2

ACTION_SYMBOLS = {'create': '+', 'update': '~', 'delete': '-', 'no-op': ' '}


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'strata {verb}',
        description=description,
    )
    parser.add_argument(
        '--config', '-c',
        help='Engine config file (default: $STRATA_CONFIG or ./strata.yaml)',
    )
    parser.add_argument(
        '--workspace', '-w',
        help='Workspace name (override: STRATA_WORKSPACE env var)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def _add_document_args(parser: argparse.ArgumentParser, required: bool = True) -> None:
    parser.add_argument(
        '--file', '-f',
        required=required,
        help='Resource document (YAML or JSON)',
    )
    parser.add_argument(
        '--var',
        action='append',
        default=[],
        metavar='KEY=VALUE',
        help='Override a document variable (repeatable)',
    )


def _add_target_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--target', '-t',
        action='append',
        default=[],
        metavar='ADDRESS',
        help='Limit to this resource and its dependencies (repeatable)',
    )


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _parse_vars(pairs: list[str]) -> dict:
    """Parse --var KEY=VALUE pairs; values are read as YAML scalars."""
    variables: dict[str, Any] = {}
    for pair in pairs:
        if '=' not in pair:
            raise ValidationError(f"Invalid --var '{pair}': expected KEY=VALUE")
        key, value = pair.split('=', 1)
        try:
            variables[key.strip()] = yaml.safe_load(value) if value else ''
        except yaml.YAMLError:
            variables[key.strip()] = value
    return variables


def _emit_json(data: dict) -> None:
    print(json.dumps(data, indent=2, default=str))


def _run(verb: str, args: argparse.Namespace, handler: Callable[[argparse.Namespace], int]) -> int:
    """Run a verb handler, mapping engine errors to exit codes."""
    try:
        return handler(args)
    except (ValidationError, ConflictError, StateError, ConfigError) as e:
        rc = EXIT_INVALID
        error = e
    except EngineError as e:
        rc = EXIT_FAILED
        error = e

    print(f"Error: {error}", file=sys.stderr)
    addresses = getattr(error, 'addresses', None)
    if addresses and len(addresses) > 1:
        for address in addresses:
            print(f"  ✗ {address}", file=sys.stderr)
    if args.json_output:
        output: dict[str, Any] = {
            'verb': verb,
            'success': False,
            'error': str(error),
            'error_type': type(error).__name__,
        }
        if getattr(error, 'address', None):
            output['address'] = error.address
        if addresses:
            output['addresses'] = addresses
        _emit_json(output)
    return rc


def _open_store(config: EngineConfig) -> StateStore:
    store = StateStore.for_workspace(config.state_dir, config.workspace)
    logger.debug(f"Workspace '{config.workspace}' state: {store.path} (serial {store.serial})")
    return store


def _open_secrets(config: EngineConfig) -> SecretStore:
    return SecretStore(config.secrets_file)


def _load_document(args: argparse.Namespace) -> ResourceDocument:
    return load_resources(file_path=args.file, variables=_parse_vars(args.var))


def _check_secrets(document: ResourceDocument, secrets: SecretStore) -> None:
    """Fail before planning if any referenced secret is undefined."""
    missing: dict[str, list[str]] = {}
    for spec in document.resources:
        for name in secrets.missing(spec.attributes):
            missing.setdefault(name, []).append(spec.address)
    if missing:
        details = ', '.join(
            f"'{name}' (used by {', '.join(users)}; set {SecretStore.env_name(name)})"
            for name, users in missing.items()
        )
        users = [a for addresses in missing.values() for a in addresses]
        raise ValidationError(f"Undefined secrets: {details}", address=users[0],
                              addresses=list(dict.fromkeys(users)))


def _plan_document(document: ResourceDocument, store: StateStore, targets: list[str]) -> Plan:
    graph = build_graph(document.resources)
    try:
        return compute_plan(graph, store, targets=targets or None)
    except KeyError as e:
        raise ValidationError(f"Unknown target {e}. Declared: {', '.join(graph.addresses)}")


def _print_plan(plan: Plan, title: str) -> None:
    """Print a human-readable plan preview."""
    counts = plan.summary()
    print("")
    print("=" * 65)
    print(f"  {title}")
    print(f"  Workspace: {plan.workspace}")
    print("=" * 65)
    print("")
    for change in plan.changes:
        if change.action == NO_OP:
            continue
        symbol = ACTION_SYMBOLS[change.action]
        print(f"  {symbol} {change.address} ({change.action})")
        for key, values in change.diff.items():
            if change.action == DELETE:
                print(f"      {key}: {values['old']!r}")
            elif change.prior is None:
                print(f"      {key}: {values['new']!r}")
            else:
                print(f"      {key}: {values['old']!r} -> {values['new']!r}")
    if not plan.has_changes:
        print("  No changes. Infrastructure matches the resource document.")
    print("")
    print(f"  Plan: {counts['create']} to create, {counts['update']} to update, "
          f"{counts['delete']} to delete, {counts[NO_OP]} unchanged")
    print("")


def _confirm(message: str) -> bool:
    print(message)
    response = input("Continue? [y/N] ").strip().lower()
    if response != 'y':
        print("Aborted.")
        return False
    return True


def _execute(plan: Plan, config: EngineConfig, store: StateStore, secrets: SecretStore) -> ApplyResult:
    """Apply a plan with SIGINT wired to cancellation."""
    providers = [c.provider for c in plan.changes if c.is_change]
    executor = Executor(
        registry=build_registry(config, providers, secrets),
        store=store,
        secrets=secrets,
        retry=config.retry,
        max_workers=config.max_workers,
    )

    def _on_interrupt(signum, frame):
        print("\nInterrupted: waiting for in-flight changes to finish...", file=sys.stderr)
        executor.cancel()

    previous = signal.signal(signal.SIGINT, _on_interrupt)
    try:
        result = executor.apply(plan)
    finally:
        signal.signal(signal.SIGINT, previous)

    result.save(config.workspace_dir / 'last-apply.json')
    return result


def _print_result(result: ApplyResult) -> None:
    for outcome in result.outcomes:
        if outcome.action == NO_OP:
            continue
        line = f"  {ACTION_SYMBOLS[outcome.action]} {outcome.address}: {outcome.status}"
        if outcome.error:
            line += f" ({outcome.error})"
        print(line)
    if result.success:
        print(f"\nApply complete ({result.duration:.1f}s).")
    elif result.cancelled:
        print("\nApply cancelled. Applied changes are recorded in state; re-run plan to continue.")
    else:
        print("\nApply incomplete. Applied changes are recorded in state; fix the failures and re-run.")


def _write_report(args: argparse.Namespace, result: ApplyResult, verb: str, document: str) -> None:
    if not args.report_dir:
        return
    paths = ApplyReport(result=result, report_dir=Path(args.report_dir), verb=verb,
                        document=document).write()
    logger.info(f"Report written to {paths[0].parent}")


# validate

def _check_providers(config: EngineConfig, document: ResourceDocument,
                     secrets: SecretStore) -> list[str]:
    """Ping http providers used by the document.

    Returns:
        List of error messages (empty = all reachable)
    """
    registry = build_registry(config, [s.provider for s in document.resources], secrets)
    errors = []
    for name, capability in registry.capabilities():
        if not isinstance(capability, HttpProvider):
            logger.debug(f"Provider '{name}' is local, nothing to check")
            continue
        ok, message = capability.ping()
        if ok:
            logger.info(f"Provider '{name}': {message}")
        else:
            errors.append(f"Provider '{name}': {message}")
    return errors


def _validate(args: argparse.Namespace) -> int:
    config = load_engine_config(args.config, args.workspace)
    document = _load_document(args)
    graph = build_graph(document.resources)
    secrets = _open_secrets(config)
    _check_secrets(document, secrets)

    errors = _check_providers(config, document, secrets) if args.check_providers else []

    count = len(graph)
    if args.json_output:
        output: dict[str, Any] = {
            'verb': 'validate',
            'success': not errors,
            'document': document.name,
            'resources': [node.address for node in graph.topological_order()],
        }
        if errors:
            output['errors'] = errors
        _emit_json(output)
    elif errors:
        print("\nProvider checks failed:")
        for error in errors:
            print(f"  ✗ {error}")
        print()
    else:
        print(f"Resource document '{document.name}' is valid ({count} resource{'s' if count != 1 else ''})")
    return EXIT_FAILED if errors else EXIT_OK


def validate_main(argv: list) -> int:
    """Handle 'validate' verb."""
    parser = _common_parser('validate', 'Validate a resource document and its dependency graph')
    _add_document_args(parser)
    parser.add_argument('--check-providers', action='store_true',
                        help='Also check that http provider endpoints answer')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _run('validate', args, _validate)


# plan

def _plan(args: argparse.Namespace) -> int:
    config = load_engine_config(args.config, args.workspace)
    document = _load_document(args)
    secrets = _open_secrets(config)
    _check_secrets(document, secrets)
    store = _open_store(config)

    if args.refresh and len(store):
        providers = [r.provider for r in store.records()]
        Executor(registry=build_registry(config, providers, secrets), store=store,
                 retry=config.retry).refresh()

    plan = _plan_document(document, store, args.target)
    if args.out:
        plan.save(args.out)
        logger.info(f"Plan saved to {args.out}")

    if args.json_output:
        _emit_json({'verb': 'plan', 'success': True, 'plan': plan.to_dict()})
    else:
        _print_plan(plan, f"PLAN: {document.name}")
        if args.out:
            print(f"  Saved to {args.out}; apply with: strata apply --plan {args.out}")
            print("")
    return EXIT_OK


def plan_main(argv: list) -> int:
    """Handle 'plan' verb."""
    parser = _common_parser('plan', 'Show changes required to reach the declared state')
    _add_document_args(parser)
    _add_target_arg(parser)
    parser.add_argument('--out', '-o', help='Save the plan to a file for a later apply')
    parser.add_argument('--refresh', action='store_true',
                        help='Reconcile state with providers before planning')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _run('plan', args, _plan)


# apply

def _apply(args: argparse.Namespace) -> int:
    config = load_engine_config(args.config, args.workspace)
    secrets = _open_secrets(config)
    store = _open_store(config)

    document: Optional[ResourceDocument] = None
    if args.plan:
        plan = Plan.load(args.plan)
        if plan.workspace != store.workspace:
            raise ValidationError(
                f"Plan {args.plan} was made for workspace '{plan.workspace}', "
                f"not '{store.workspace}'"
            )
        if args.target:
            raise ValidationError("--target cannot be combined with --plan")
        name = plan.workspace
    else:
        document = _load_document(args)
        _check_secrets(document, secrets)
        plan = _plan_document(document, store, args.target)
        name = document.name

    if args.json_output and plan.has_changes and not args.yes:
        raise ValidationError("--json-output requires --yes for apply")
    if not args.json_output:
        _print_plan(plan, f"APPLY: {name}")
    if plan.has_changes and not args.yes:
        if not _confirm(f"This will apply the changes above to workspace '{store.workspace}'."):
            return EXIT_FAILED

    result = _execute(plan, config, store, secrets)
    _write_report(args, result, 'apply', name)

    outputs: dict = {}
    if document is not None and document.outputs and result.success:
        outputs = resolve_outputs(document.outputs, store)

    if args.json_output:
        output = result.to_dict()
        output['verb'] = 'apply'
        if outputs:
            output['outputs'] = outputs
        _emit_json(output)
    else:
        _print_result(result)
        _print_outputs(outputs)
    return EXIT_OK if result.success else EXIT_FAILED


def apply_main(argv: list) -> int:
    """Handle 'apply' verb."""
    parser = _common_parser('apply', 'Apply changes to reach the declared state')
    _add_document_args(parser, required=False)
    _add_target_arg(parser)
    parser.add_argument('--plan', '-p', help='Apply a plan saved with plan --out')
    parser.add_argument('--yes', '-y', action='store_true', help='Skip confirmation prompt')
    parser.add_argument('--report-dir', help='Write JSON and markdown reports to this directory')
    args = parser.parse_args(argv)
    if bool(args.file) == bool(args.plan):
        parser.error('exactly one of --file or --plan is required')
    _setup_logging(args.verbose, args.json_output)
    return _run('apply', args, _apply)


# destroy

def _destroy(args: argparse.Namespace) -> int:
    config = load_engine_config(args.config, args.workspace)
    document = _load_document(args)
    secrets = _open_secrets(config)
    store = _open_store(config)

    candidates = args.target or document.addresses
    unknown = [a for a in args.target if a not in document.addresses]
    if unknown:
        raise ValidationError(f"Unknown target(s): {', '.join(unknown)}", addresses=unknown)
    targets = [a for a in candidates if a in store]
    if not targets:
        if args.json_output:
            _emit_json({'verb': 'destroy', 'success': True, 'changes': []})
        else:
            print(f"Nothing to destroy: no resources from '{document.name}' in workspace '{store.workspace}'.")
        return EXIT_OK

    plan = compute_destroy_plan(store, targets)

    if args.json_output and not args.yes:
        raise ValidationError("--json-output requires --yes for destroy")
    if not args.json_output:
        _print_plan(plan, f"DESTROY: {document.name}")
    if not args.yes:
        message = (f"WARNING: This will destroy {len(plan.changes)} resource(s) "
                   f"in workspace '{store.workspace}'.\nThis action cannot be undone.")
        if not _confirm(message):
            return EXIT_FAILED

    result = _execute(plan, config, store, secrets)
    _write_report(args, result, 'destroy', document.name)

    if args.json_output:
        output = result.to_dict()
        output['verb'] = 'destroy'
        _emit_json(output)
    else:
        _print_result(result)
    return EXIT_OK if result.success else EXIT_FAILED


def destroy_main(argv: list) -> int:
    """Handle 'destroy' verb."""
    parser = _common_parser('destroy', 'Destroy resources declared in a document')
    _add_document_args(parser)
    _add_target_arg(parser)
    parser.add_argument('--yes', '-y', action='store_true', help='Skip confirmation prompt')
    parser.add_argument('--report-dir', help='Write JSON and markdown reports to this directory')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _run('destroy', args, _destroy)


# refresh

def _refresh(args: argparse.Namespace) -> int:
    config = load_engine_config(args.config, args.workspace)
    secrets = _open_secrets(config)
    store = _open_store(config)

    providers = [r.provider for r in store.records()]
    executor = Executor(registry=build_registry(config, providers, secrets), store=store,
                        retry=config.retry)
    summary = executor.refresh()

    if args.json_output:
        _emit_json({'verb': 'refresh', 'success': True, **summary})
    else:
        for address in summary['drifted']:
            print(f"  ~ {address}: drifted")
        for address in summary['removed']:
            print(f"  - {address}: no longer exists (removed from state)")
        print(f"Refreshed {len(providers)} resource(s): {len(summary['drifted'])} drifted, "
              f"{len(summary['removed'])} removed")
    return EXIT_OK


def refresh_main(argv: list) -> int:
    """Handle 'refresh' verb."""
    parser = _common_parser('refresh', 'Reconcile state with what providers report')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _run('refresh', args, _refresh)


# state

def _state(args: argparse.Namespace) -> int:
    config = load_engine_config(args.config, args.workspace)
    store = _open_store(config)

    if args.action == 'list':
        if args.json_output:
            _emit_json({'verb': 'state list', 'success': True, 'workspace': store.workspace,
                        'serial': store.serial, 'resources': store.addresses})
        else:
            for record in store.records():
                print(f"{record.address:40} {record.provider_id}")
        return EXIT_OK

    if not args.address:
        raise ValidationError(f"state {args.action} requires a resource address")
    record = store.get(args.address)
    if record is None:
        raise ValidationError(f"No state for '{args.address}' in workspace '{store.workspace}'",
                              address=args.address)

    if args.action == 'show':
        if args.json_output:
            _emit_json({'verb': 'state show', 'success': True, 'resource': record.to_dict()})
        else:
            print(yaml.safe_dump(record.to_dict(), default_flow_style=False, sort_keys=False), end='')
        return EXIT_OK

    # rm: forget the record; the provider object is left untouched
    store.delete(args.address, expected_fingerprint=record.fingerprint)
    logger.info(f"Removed '{args.address}' from state (provider object {record.provider_id} kept)")
    if args.json_output:
        _emit_json({'verb': 'state rm', 'success': True, 'address': args.address})
    else:
        print(f"Removed {args.address}")
    return EXIT_OK


def state_main(argv: list) -> int:
    """Handle 'state' verb (list, show, rm)."""
    parser = _common_parser('state', 'Inspect or edit workspace state')
    parser.add_argument('action', choices=['list', 'show', 'rm'])
    parser.add_argument('address', nargs='?', help='Resource address (show, rm)')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _run('state', args, _state)


# output

def _print_outputs(outputs: dict) -> None:
    if not outputs:
        return
    print("\nOutputs:")
    for name, value in outputs.items():
        print(f"  {name} = {json.dumps(value, default=str)}")


def _output(args: argparse.Namespace) -> int:
    config = load_engine_config(args.config, args.workspace)
    document = _load_document(args)
    store = _open_store(config)

    outputs = resolve_outputs(document.outputs, store)
    if args.name:
        if args.name not in outputs:
            raise ValidationError(
                f"Unknown output '{args.name}'. Declared: "
                f"{', '.join(outputs) if outputs else 'none'}"
            )
        outputs = {args.name: outputs[args.name]}

    if args.json_output:
        _emit_json({'verb': 'output', 'success': True, 'outputs': outputs})
    elif args.name:
        value = outputs[args.name]
        print(value if isinstance(value, str) else json.dumps(value, default=str))
    else:
        for name, value in outputs.items():
            print(f"{name} = {json.dumps(value, default=str)}")
    return EXIT_OK


def output_main(argv: list) -> int:
    """Handle 'output' verb."""
    parser = _common_parser('output', 'Show document outputs resolved against state')
    _add_document_args(parser)
    parser.add_argument('name', nargs='?', help='Single output to print')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _run('output', args, _output)
