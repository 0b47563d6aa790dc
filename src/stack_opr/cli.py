"""CLI handlers for stack verb commands (plan, apply, destroy, validate, state).

Usage:
    stackplan stack plan -S <stack> [--json-output] [--verbose]
    stackplan stack apply -S <stack> [--concurrency N] [--report] [--json-output]
    stackplan stack destroy -S <stack> [--yes]
    stackplan stack validate -S <stack> [--verbose]
    stackplan state show -S <stack> [--json-output]
    stackplan state unlock -S <stack>

Exit codes: 0 success, 1 invalid input (stack, graph, config, lock),
2 partial apply (an operation failed or the run was cancelled).
"""

import argparse
import json
import logging
import signal
import sys
import threading
import time
from typing import Optional

from config import ConfigError, RunConfig, list_stacks, load_run_config
from errors import StackError
from providers import create_provider
from readiness import validate_provider
from reporting.report import RunReport
from stack import Stack, load_stack
from stack_opr.executor import ApplyResult, Executor
from stack_opr.graph import ResourceGraph
from stack_opr.plan import Plan, plan_changes, plan_destroy
from stack_opr.state import StateStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_PARTIAL = 2


def _stack_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--stack', '-S',
        help='Stack name from the stacks/ directory',
    )
    parser.add_argument(
        '--stack-file',
        help='Path to stack file',
    )
    parser.add_argument(
        '--stack-json',
        help='Inline stack JSON',
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


def _common_parser(verb: str, applies: bool = False) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'stackplan stack {verb}',
        description=f'{verb.capitalize()} resources declared in a stack',
    )
    _stack_options(parser)
    if applies:
        parser.add_argument(
            '--concurrency',
            type=int,
            help='Max operations applied in parallel (default: from config)',
        )
        parser.add_argument(
            '--skip-preflight',
            action='store_true',
            help='Skip pre-flight provider checks',
        )
        parser.add_argument(
            '--report',
            action='store_true',
            help='Write JSON and markdown run reports',
        )
    return parser


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


def _load_stack_and_config(args) -> tuple[Stack, RunConfig]:
    """Load run config and stack from parsed args.

    Raises:
        SystemExit: On configuration or validation errors
    """
    if not args.stack and not args.stack_file and not args.stack_json:
        print("Error: specify a stack with -S, --stack-file, or --stack-json",
              file=sys.stderr)
        sys.exit(EXIT_INVALID)

    try:
        config = load_run_config()
    except ConfigError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(EXIT_INVALID)

    try:
        stack = load_stack(
            config,
            name=args.stack,
            file_path=args.stack_file,
            json_str=args.stack_json,
        )
    except (ConfigError, StackError) as e:
        print(f"Error loading stack: {e}", file=sys.stderr)
        sys.exit(EXIT_INVALID)
    return stack, config


def _build_graph(stack: Stack) -> ResourceGraph:
    """Build the resource graph.

    Raises:
        SystemExit: On graph errors (unresolved reference, cycle)
    """
    try:
        return ResourceGraph(stack)
    except StackError as e:
        print(f"Error in stack '{stack.name}': {e}", file=sys.stderr)
        sys.exit(EXIT_INVALID)


def _run_preflight(args, config: RunConfig) -> Optional[int]:
    """Run preflight checks for apply/destroy.

    Returns:
        None if checks pass, exit code (1) if checks fail.
    """
    if args.skip_preflight:
        return None

    errors = validate_provider(config)
    if errors:
        print("\nPre-flight validation failed:")
        for error in errors:
            for i, line in enumerate(error.split('\n')):
                prefix = "  ✗ " if i == 0 else "    "
                print(f"{prefix}{line}")
        print("\nUse --skip-preflight to bypass these checks")
        print()
        return EXIT_INVALID
    logger.info("Pre-flight validation passed")
    return None


def _emit_json(verb: str, stack_name: str, result: ApplyResult, plan: Plan,
               duration: float) -> None:
    """Emit structured JSON output."""
    output = {
        'verb': verb,
        'stack': stack_name,
        'success': result.success,
        'cancelled': result.cancelled,
        'duration_seconds': round(duration, 2),
        'state_serial': result.record.serial,
        'summary': plan.summary(),
        'operations': [s.to_dict() for s in result.operations.values()],
    }
    if result.failure is not None:
        output['error'] = str(result.failure)
    print(json.dumps(output, indent=2))


def _print_result(result: ApplyResult) -> None:
    completed = len(result.completed)
    total = len(result.operations)
    if result.success:
        print(f"\nApply complete: {completed}/{total} operation(s) committed.")
        return
    if result.failure is not None:
        print(f"\nApply failed: {result.failure}", file=sys.stderr)
    elif result.cancelled:
        print("\nApply cancelled.", file=sys.stderr)
    print(f"{completed}/{total} operation(s) committed, {len(result.skipped)} not started. "
          "Re-run apply to resume.", file=sys.stderr)


def _run_plan(verb: str, args, config: RunConfig, store: StateStore, plan_fn,
              concurrency: int, stack_name: str) -> int:
    """Plan and apply under the state lock, with SIGINT mapped to cancellation."""
    provider = create_provider(config)
    executor = Executor.from_config(config, provider, store, concurrency=concurrency)

    previous_handler = None
    if threading.current_thread() is threading.main_thread():
        def _on_sigint(signum, frame):
            logger.warning("Interrupt received, finishing in-flight operations")
            executor.cancel()
        previous_handler = signal.signal(signal.SIGINT, _on_sigint)

    try:
        with store.lock() as token:
            record = store.load()
            plan = plan_fn(record)
            if not args.json_output:
                print(plan.render(verbose=args.verbose))

            report = None
            if args.report or config.reports:
                report = RunReport(stack=stack_name, verb=verb,
                                   report_dir=store.stack_dir / 'reports')
                report.start(plan)

            start = time.time()
            result = executor.apply(plan, record, token)
            duration = time.time() - start
    except StackError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)

    if report is not None:
        for path in report.finish(result):
            logger.info(f"Report written to {path}")

    if args.json_output:
        _emit_json(verb, stack_name, result, plan, duration)
    else:
        _print_result(result)
    return EXIT_OK if result.success else EXIT_PARTIAL


def plan_main(argv: list) -> int:
    """Handle 'stack plan' verb."""
    parser = _common_parser('plan')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack, config = _load_stack_and_config(args)
    graph = _build_graph(stack)

    store = StateStore(config.state_dir, stack.name)
    try:
        record = store.load()
    except StackError as e:
        print(f"Error loading state: {e}", file=sys.stderr)
        return EXIT_INVALID

    plan = plan_changes(graph, record)
    if args.json_output:
        print(json.dumps(plan.to_dict(), indent=2))
    else:
        print(plan.render(verbose=args.verbose))
    return EXIT_OK


def apply_main(argv: list) -> int:
    """Handle 'stack apply' verb."""
    parser = _common_parser('apply', applies=True)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack, config = _load_stack_and_config(args)
    if args.concurrency is not None and args.concurrency < 1:
        print("Error: --concurrency must be >= 1", file=sys.stderr)
        return EXIT_INVALID

    preflight_rc = _run_preflight(args, config)
    if preflight_rc is not None:
        return preflight_rc

    graph = _build_graph(stack)
    concurrency = args.concurrency or stack.settings.concurrency or config.concurrency

    logger.info(f"Applying stack '{stack.name}' (concurrency {concurrency})")
    store = StateStore(config.state_dir, stack.name)
    return _run_plan('apply', args, config, store,
                     lambda record: plan_changes(graph, record),
                     concurrency, stack.name)


def destroy_main(argv: list) -> int:
    """Handle 'stack destroy' verb.

    Deletes every resource tracked in the state record. The stack file is
    only needed for its name; if it declares a valid graph, its edges are
    used as extra ordering constraints.
    """
    parser = _common_parser('destroy', applies=True)
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack, config = _load_stack_and_config(args)

    preflight_rc = _run_preflight(args, config)
    if preflight_rc is not None:
        return preflight_rc

    try:
        graph: Optional[ResourceGraph] = ResourceGraph(stack)
    except StackError as e:
        logger.warning(f"Stack graph invalid ({e}), ordering by recorded dependencies only")
        graph = None

    store = StateStore(config.state_dir, stack.name)

    # Confirmation for destructive operation
    if not args.yes:
        print(f"\nWARNING: This will destroy all resources tracked for stack '{stack.name}'.")
        print(f"State: {store.path}")
        print("Resources with removal_policy 'retain' are left in place.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return EXIT_INVALID

    concurrency = args.concurrency or stack.settings.concurrency or config.concurrency
    logger.info(f"Destroying stack '{stack.name}'")
    return _run_plan('destroy', args, config, store,
                     lambda record: plan_destroy(record, graph),
                     concurrency, stack.name)


def validate_main(argv: list) -> int:
    """Handle 'stack validate' verb.

    Loads the stack and builds its graph without touching state or the
    provider: types, required properties, references and cycles.
    """
    parser = argparse.ArgumentParser(
        prog='stackplan stack validate',
        description='Validate stack declarations and references',
    )
    _stack_options(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    if not args.stack and not args.stack_file and not args.stack_json:
        print("Error: specify a stack with -S, --stack-file, or --stack-json",
              file=sys.stderr)
        return EXIT_INVALID

    try:
        config = load_run_config()
        stack = load_stack(
            config,
            name=args.stack,
            file_path=args.stack_file,
            json_str=args.stack_json,
        )
        graph = ResourceGraph(stack)
    except (ConfigError, StackError) as e:
        if args.json_output:
            print(json.dumps({'valid': False, 'error': str(e)}, indent=2))
        else:
            print(f"✗ {e}", file=sys.stderr)
        return EXIT_INVALID

    if args.json_output:
        print(json.dumps({
            'valid': True,
            'stack': stack.name,
            'resources': len(graph),
            'order': list(graph.logical_ids),
        }, indent=2))
        return EXIT_OK

    count = len(graph)
    print(f"Stack '{stack.name}' is valid ({count} resource{'s' if count != 1 else ''})")
    if args.verbose:
        for node in graph.create_order():
            deps = f" <- {', '.join(node.dependencies)}" if node.dependencies else ''
            print(f"  {node.position + 1:>3}. {node.logical_id} ({node.type}){deps}")
    return EXIT_OK


def _state_show(store: StateStore, json_output: bool) -> int:
    try:
        record = store.load()
    except StackError as e:
        print(f"Error loading state: {e}", file=sys.stderr)
        return EXIT_INVALID

    if json_output:
        data = record.to_dict()
        data['lock'] = store.read_lock()
        print(json.dumps(data, indent=2))
        return EXIT_OK

    print(f"Stack '{record.stack_name}' (serial {record.serial}, lineage {record.lineage})")
    lock = store.read_lock()
    if lock:
        print(f"  Locked by pid {lock.get('pid', '?')}")
    if not record.resources:
        print("  No resources tracked.")
    for lid, rs in record.resources.items():
        retain = ' [retain]' if rs.removal_policy == 'retain' else ''
        print(f"  {lid:<28} {rs.resource_type:<18} {rs.physical_id}{retain}")
    return EXIT_OK


def state_main(argv: list) -> int:
    """Handle 'state' noun (show, unlock)."""
    if not argv or argv[0].startswith('-'):
        print("Usage: stackplan state <action> -S <stack>")
        print()
        print("Actions:")
        print("  show      Show the state record")
        print("  unlock    Remove a stale state lock")
        return EXIT_INVALID if not argv else EXIT_OK

    action = argv[0]
    if action not in ('show', 'unlock'):
        print(f"Error: Unknown state action '{action}'")
        print("Available actions: show, unlock")
        return EXIT_INVALID

    parser = argparse.ArgumentParser(
        prog=f'stackplan state {action}',
        description='Show the state record' if action == 'show' else 'Remove a stale state lock',
    )
    parser.add_argument('--stack', '-S', required=True, help='Stack name')
    parser.add_argument('--json-output', action='store_true', help='Output JSON')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    args = parser.parse_args(argv[1:])
    _setup_logging(args.verbose, args.json_output)

    try:
        config = load_run_config()
    except ConfigError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return EXIT_INVALID
    store = StateStore(config.state_dir, args.stack)

    if action == 'show':
        return _state_show(store, args.json_output)

    if store.force_unlock():
        print(f"Removed lock for stack '{args.stack}'")
    else:
        print(f"Stack '{args.stack}' is not locked")
    return EXIT_OK


def available_stacks() -> list[str]:
    """Stack names in the workspace (empty if config cannot be loaded)."""
    try:
        return list_stacks(load_run_config())
    except ConfigError:
        return []
