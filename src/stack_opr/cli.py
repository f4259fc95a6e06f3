"""CLI handlers for stack verb commands (validate, plan, apply, destroy, show, unlock).

Usage:
    stack-driver validate -t <template> [-p K=V ...] [--verbose]
    stack-driver plan -t <template> -s <stack> [-p K=V ...] [--json-output]
    stack-driver apply -t <template> -s <stack> [-p K=V ...] [--dry-run] [--workers N]
    stack-driver destroy -s <stack> [--dry-run] [--yes]
    stack-driver show -s <stack> [--json-output]
    stack-driver unlock -s <stack>
"""

import argparse
import json
import logging
import sys
import time
from typing import Optional

from common import parse_key_values
from config import ConfigError, DriverConfig, SUPPORTED_BACKENDS, load_config
from errors import (
    ProvisioningError,
    RollbackFailureError,
    StackError,
    StackInconsistentError,
    StackLockedError,
    StalePlanError,
)
from stack_opr.orchestrator import StackOrchestrator
from stack_opr.planner import ChangeAction, ChangePlan
from template import Template, load_template

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_STRUCTURAL = 2
EXIT_PROVISIONING = 3
EXIT_ROLLBACK_FAILED = 4
EXIT_BLOCKED = 5

_ACTION_SYMBOLS = {
    ChangeAction.CREATE: '+',
    ChangeAction.UPDATE: '~',
    ChangeAction.REPLACE: '-/+',
    ChangeAction.DELETE: '-',
    ChangeAction.NOOP: ' ',
}


def _common_parser(verb: str, description: str, template: bool = True) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'stack-driver {verb}',
        description=description,
    )
    if template:
        parser.add_argument(
            '--template', '-t',
            help='Path to template file (YAML or JSON)',
        )
        parser.add_argument(
            '--template-json',
            help='Inline template JSON',
        )
        parser.add_argument(
            '--param', '-p',
            action='append',
            metavar='KEY=VALUE',
            help='Template parameter value (repeatable)',
        )
    parser.add_argument(
        '--config', '-c',
        help='Path to driver config file (default: $STACK_DRIVER_CONFIG or stack-driver.yaml)',
    )
    parser.add_argument(
        '--backend',
        choices=SUPPORTED_BACKENDS,
        help='Provisioning backend (default from config)',
    )
    parser.add_argument(
        '--endpoint',
        help='Base URL of the HTTP provisioning API',
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


def _add_stack_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--stack', '-s',
        required=True,
        help='Stack identifier',
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


def _load_config(args, **overrides) -> DriverConfig:
    return load_config(
        args.config,
        backend=args.backend,
        endpoint=args.endpoint,
        **overrides,
    )


def _load_template_and_params(args) -> tuple[Template, dict]:
    """Load template and parse -p values.

    Raises:
        TemplateParseError: Missing or invalid template
        ValueError: Malformed -p value
    """
    template = load_template(file_path=args.template, json_str=args.template_json)
    return template, parse_key_values(args.param)


def _exit_code(error: Exception) -> int:
    """Map an error to the CLI exit code."""
    if isinstance(error, RollbackFailureError):
        return EXIT_ROLLBACK_FAILED
    if isinstance(error, (StackLockedError, StalePlanError, StackInconsistentError)):
        return EXIT_BLOCKED
    if isinstance(error, ProvisioningError):
        return EXIT_PROVISIONING
    return EXIT_STRUCTURAL


def _report_error(error: Exception, json_output: bool) -> int:
    """Print an error and return its exit code."""
    rc = _exit_code(error)
    if json_output:
        payload = {'success': False, 'error': str(error), 'exit_code': rc}
        rollback = getattr(error, 'rollback', None)
        if rollback is not None:
            payload['rollback'] = rollback.to_dict()
        print(json.dumps(payload, indent=2))
    else:
        print(f"Error: {error}", file=sys.stderr)
        if isinstance(error, ProvisioningError) and error.rollback is not None:
            print(f"Stack rolled back ({len(error.rollback.compensated)} changes reverted)",
                  file=sys.stderr)
        if isinstance(error, RollbackFailureError) and error.cause is not None:
            print(f"Original failure: {error.cause}", file=sys.stderr)
    return rc


def print_plan(plan: ChangePlan, title: str = 'PLAN') -> None:
    """Print a human-readable plan preview."""
    print("")
    print("=" * 65)
    print(f"  {title}: {plan.stack_id} (state version {plan.state_version})")
    print("=" * 65)
    print("")
    if not plan.has_changes:
        print("  No changes. Stack is up to date.")
    for change in plan.effective_changes:
        symbol = _ACTION_SYMBOLS[change.action]
        print(f"  {symbol:>3} {change.label} [{change.kind}]")
        if change.changed:
            print(f"        changed: {', '.join(change.changed)}")
        if change.replacement_reasons:
            print(f"        forces replacement: {', '.join(change.replacement_reasons)}")
    if plan.skipped:
        print(f"\n  Skipped by condition: {', '.join(plan.skipped)}")
    summary = plan.summary()
    print("")
    print(f"  {summary['create']} to create, {summary['update']} to update, "
          f"{summary['replace']} to replace, {summary['delete']} to delete")
    print(f"  fingerprint: {plan.fingerprint[:16]}")
    print("")


def validate_main(argv: list) -> int:
    """Handle 'validate' verb."""
    parser = _common_parser('validate', 'Validate template structure and references')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = _load_config(args)
        template, params = _load_template_and_params(args)
        orchestrator = StackOrchestrator.from_config(config)
        graph = orchestrator.validate(template, params)
    except (StackError, ConfigError, ValueError) as e:
        return _report_error(e, args.json_output)

    if args.json_output:
        print(json.dumps({
            'success': True,
            'template': template.name,
            'resources': graph.topological_order(),
            'max_depth': graph.max_depth,
        }, indent=2))
    else:
        count = len(graph)
        print(f"Template '{template.name or template.source_path}' is valid "
              f"({count} resource{'s' if count != 1 else ''})")
    return EXIT_OK


def plan_main(argv: list) -> int:
    """Handle 'plan' verb (read-only)."""
    parser = _common_parser('plan', 'Show changes needed to bring a stack to the template')
    _add_stack_arg(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = _load_config(args)
        template, params = _load_template_and_params(args)
        orchestrator = StackOrchestrator.from_config(config)
        plan = orchestrator.plan(template, args.stack, params)
    except (StackError, ConfigError, ValueError) as e:
        return _report_error(e, args.json_output)

    if args.json_output:
        print(json.dumps(plan.to_dict(), indent=2))
    else:
        print_plan(plan)
    return EXIT_OK


def apply_main(argv: list) -> int:
    """Handle 'apply' verb."""
    parser = _common_parser('apply', 'Plan and apply a template to a stack')
    _add_stack_arg(parser)
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview changes without calling the backend',
    )
    parser.add_argument(
        '--workers',
        type=int,
        help='Maximum concurrent backend operations',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = _load_config(args, max_workers=args.workers)
        template, params = _load_template_and_params(args)
        orchestrator = StackOrchestrator.from_config(config)
        plan = orchestrator.plan(template, args.stack, params)
    except (StackError, ConfigError, ValueError) as e:
        return _report_error(e, args.json_output)

    if args.dry_run:
        if args.json_output:
            print(json.dumps({'dry_run': True, 'plan': plan.to_dict()}, indent=2))
        else:
            print_plan(plan, title='DRY-RUN APPLY')
        return EXIT_OK

    return _run_apply('apply', orchestrator, plan, args.json_output)


def destroy_main(argv: list) -> int:
    """Handle 'destroy' verb."""
    parser = _common_parser('destroy', 'Delete every recorded resource of a stack', template=False)
    _add_stack_arg(parser)
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview deletions without calling the backend',
    )
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = _load_config(args)
        orchestrator = StackOrchestrator.from_config(config)
        plan = orchestrator.plan_destroy(args.stack)
    except (StackError, ConfigError, ValueError) as e:
        return _report_error(e, args.json_output)

    if args.dry_run:
        print_plan(plan, title='DRY-RUN DESTROY')
        return EXIT_OK

    # Confirmation for destructive operation
    if plan.has_changes and not args.yes:
        print(f"\nWARNING: This will delete {len(plan.effective_changes)} resource(s) "
              f"of stack '{args.stack}'.")
        print("This action cannot be undone.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return EXIT_ABORTED

    return _run_apply('destroy', orchestrator, plan, args.json_output)


def _run_apply(verb: str, orchestrator: StackOrchestrator, plan: ChangePlan, json_output: bool) -> int:
    logger.info(f"{verb.capitalize()} stack '{plan.stack_id}': {len(plan.effective_changes)} changes")
    start = time.time()
    try:
        result = orchestrator.apply(plan)
    except StackError as e:
        return _report_error(e, json_output)
    duration = time.time() - start

    if json_output:
        output = {
            'verb': verb,
            'success': True,
            'duration_seconds': round(duration, 2),
            **result.to_dict(),
        }
        print(json.dumps(output, indent=2))
    else:
        print(f"\n{verb.capitalize()} complete: {len(result.changed)} change(s) in {duration:.1f}s")
        for name, value in result.outputs.items():
            print(f"  {name} = {value}")
    return EXIT_OK


def show_main(argv: list) -> int:
    """Handle 'show' verb."""
    parser = _common_parser('show', 'Print recorded stack state and outputs', template=False)
    _add_stack_arg(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = _load_config(args)
        orchestrator = StackOrchestrator.from_config(config)
        state = orchestrator.state(args.stack)
        locked = orchestrator.store.is_locked(args.stack)
    except (StackError, ConfigError, ValueError) as e:
        return _report_error(e, args.json_output)

    if args.json_output:
        print(json.dumps({**state.to_dict(), 'locked': locked}, indent=2, sort_keys=True))
        return EXIT_OK

    print(f"Stack '{state.stack_id}' (version {state.version}, status {state.status})"
          + (" [locked]" if locked else ""))
    if not len(state):
        print("  No recorded resources")
    for lid, record in state.resources.items():
        print(f"  {lid}: {record.kind} {record.physical_id}")
    if state.outputs:
        print("Outputs:")
        for name, value in state.outputs.items():
            print(f"  {name} = {value}")
    return EXIT_OK


def unlock_main(argv: list) -> int:
    """Handle 'unlock' verb."""
    parser = _common_parser('unlock', 'Clear an inconsistent marker after manual repair',
                            template=False)
    _add_stack_arg(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = _load_config(args)
        orchestrator = StackOrchestrator.from_config(config)
        cleared = orchestrator.unlock(args.stack)
    except (StackError, ConfigError, ValueError) as e:
        return _report_error(e, args.json_output)

    if cleared:
        print(f"Stack '{args.stack}' unlocked")
    else:
        print(f"Stack '{args.stack}' was not locked")
    return EXIT_OK


VERBS = {
    'validate': (validate_main, 'Validate a template'),
    'plan': (plan_main, 'Show planned changes (read-only)'),
    'apply': (apply_main, 'Plan and apply a template'),
    'destroy': (destroy_main, 'Delete every recorded resource'),
    'show': (show_main, 'Print recorded state and outputs'),
    'unlock': (unlock_main, 'Clear an inconsistent marker'),
}


def dispatch(verb: str, argv: list) -> Optional[int]:
    """Run a verb handler, or return None for an unknown verb."""
    entry = VERBS.get(verb)
    if entry is None:
        return None
    handler, _ = entry
    rc: int = handler(argv)
    return rc
