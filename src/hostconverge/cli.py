"""CLI entry point for hostconverge.

Usage:
    hostconverge run <playbook> [--tags a,b] [--skip-tags c] [--json-output] [--verbose]
    hostconverge check <playbook> [--tags a,b] [--skip-tags c]
    hostconverge validate <playbook> [--preflight]
    hostconverge list <playbook> [--tags a,b] [--skip-tags c]

Exit codes:
    0  every selected step converged (best-effort failures allowed)
    1  a step failed, or preflight checks failed
    2  usage or configuration error
    3  another run holds the lock
"""

import argparse
import json
import logging
import socket
import sys
from importlib.metadata import PackageNotFoundError, version
from typing import Optional

from hostconverge.actions import RunContext
from hostconverge.common import LockHeldError, RunLock
from hostconverge.config import ConfigError, RunConfig
from hostconverge.executor import Executor
from hostconverge.playbook import Playbook, load_playbook, select_steps, step_matches
from hostconverge.reporting import RunReport
from hostconverge.secret_store import SecretStore
from hostconverge.validation import format_preflight_results, run_preflight_checks

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_LOCKED = 3

COMMANDS = {
    "run": "Converge this host to a playbook",
    "check": "Report what a run would change, without changing anything",
    "validate": "Load and validate a playbook (optionally run preflight checks)",
    "list": "List a playbook's steps and tags",
}


def get_version() -> str:
    """Installed package version, or 'dev' when running from a checkout."""
    try:
        return version('hostconverge')
    except PackageNotFoundError:
        return 'dev'


def _tag_set(value: Optional[str]) -> Optional[set[str]]:
    if not value:
        return None
    return {t.strip() for t in value.split(',') if t.strip()}


def _common_parser(command: str) -> argparse.ArgumentParser:
    """Build argument parser with options shared by every command."""
    parser = argparse.ArgumentParser(
        prog=f'hostconverge {command}',
        description=COMMANDS[command],
    )
    parser.add_argument(
        'playbook',
        help='Path to the playbook YAML file',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    return parser


def _add_selector_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--tags', '-t',
        help='Only run steps with at least one of these tags (comma-separated)',
    )
    parser.add_argument(
        '--skip-tags',
        help='Skip steps with any of these tags (comma-separated)',
    )


def _add_run_args(parser: argparse.ArgumentParser) -> None:
    _add_selector_args(parser)
    parser.add_argument(
        '--state-dir',
        help='Engine state directory (override: HOSTCONVERGE_STATE_DIR)',
    )
    parser.add_argument(
        '--report-dir', '-r',
        help='Directory for run reports (override: HOSTCONVERGE_REPORT_DIR)',
    )
    parser.add_argument(
        '--lock-file',
        help='Run lock file (override: HOSTCONVERGE_LOCK_FILE)',
    )
    parser.add_argument(
        '--secrets-file',
        help='Owner-only YAML secrets file (override: HOSTCONVERGE_SECRETS_FILE)',
    )
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip pre-flight validation checks',
    )
    parser.add_argument(
        '--no-report',
        action='store_true',
        help='Do not write JSON/markdown report files',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )


def _setup_logging(verbose: bool, json_output: bool = False) -> None:
    """Configure logging based on flags."""
    stream = sys.stderr if json_output else sys.stdout
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        stream=stream,
    )


def _load(path: str) -> Optional[Playbook]:
    """Load a playbook, printing the error and returning None on failure."""
    try:
        return load_playbook(path)
    except ConfigError as e:
        print(f"Error loading playbook: {e}", file=sys.stderr)
        return None


def _run_preflight(args, steps, check_mode: bool) -> Optional[int]:
    """Run preflight checks.

    Returns:
        None if checks pass, exit code if they fail.
    """
    if args.skip_preflight:
        return None
    success, results = run_preflight_checks(steps, check_mode=check_mode)
    if not success:
        print(format_preflight_results(args.playbook, results), file=sys.stderr)
        print("\nUse --skip-preflight to bypass these checks", file=sys.stderr)
        return EXIT_FAILED
    for category in results.values():
        for warning in category['warnings']:
            logger.warning(f"Preflight: {warning.splitlines()[0]}")
    logger.info("Pre-flight validation passed")
    return None


def _execute(argv: list, check_mode: bool) -> int:
    """Shared body of 'run' and 'check'."""
    command = 'check' if check_mode else 'run'
    parser = _common_parser(command)
    _add_run_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = RunConfig.discover(
            state_dir=args.state_dir,
            report_dir=args.report_dir,
            lock_file=args.lock_file,
            secrets_file=args.secrets_file,
        )
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    playbook = _load(args.playbook)
    if playbook is None:
        return EXIT_USAGE

    tags, skip_tags = _tag_set(args.tags), _tag_set(args.skip_tags)
    selected = select_steps(playbook.steps, tags, skip_tags)
    if not selected:
        print("No steps match the given tags", file=sys.stderr)
        return EXIT_USAGE

    preflight_rc = _run_preflight(args, selected, check_mode)
    if preflight_rc is not None:
        return preflight_rc

    lock = RunLock(config.lock_file)
    if not check_mode:
        try:
            lock.acquire()
        except LockHeldError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_LOCKED

    try:
        if not check_mode:
            config.ensure_state_dir()
        context = RunContext(
            secrets=SecretStore.default(config.secrets_file),
            state_dir=config.state_dir,
            vars=playbook.vars,
            public_roots=playbook.public_roots,
            command_timeout=config.command_timeout,
        )
        executor = Executor(
            context,
            check_mode=check_mode,
            state_dir=None if check_mode else config.state_dir,
        )

        report = RunReport(playbook=playbook.name, report_dir=config.report_dir,
                           host=socket.gethostname())
        report.start()
        run = executor.run(selected, playbook_name=playbook.name)
        report.skipped = [s.label for s in selected[len(run.results):]]
        written = report.finish(run, write=not (args.no_report or check_mode))
    finally:
        lock.release()

    for path in written:
        logger.debug(f"Wrote report {path}")

    if args.json_output:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(f"\n{playbook.name}: {run.recap()}")
        for result in run.fatal_failures:
            print(f"  ✗ {result.step.label}: {result.error.value}: {result.message}")
        if report.skipped:
            print(f"  {len(report.skipped)} step(s) not run")

    return run.exit_code


def run_main(argv: list) -> int:
    """Handle 'run' command."""
    return _execute(argv, check_mode=False)


def check_main(argv: list) -> int:
    """Handle 'check' command."""
    return _execute(argv, check_mode=True)


def validate_main(argv: list) -> int:
    """Handle 'validate' command."""
    parser = _common_parser('validate')
    parser.add_argument(
        '--preflight',
        action='store_true',
        help='Also check that this host has the tools the playbook needs',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    playbook = _load(args.playbook)
    if playbook is None:
        return EXIT_USAGE

    count = len(playbook.steps)
    print(f"Playbook '{playbook.name}' is valid ({count} step{'s' if count != 1 else ''})")

    if args.preflight:
        success, results = run_preflight_checks(playbook.steps)
        print(format_preflight_results(playbook.name, results, socket.gethostname()))
        return EXIT_OK if success else EXIT_FAILED
    return EXIT_OK


def list_main(argv: list) -> int:
    """Handle 'list' command."""
    parser = _common_parser('list')
    _add_selector_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    playbook = _load(args.playbook)
    if playbook is None:
        return EXIT_USAGE

    tags, skip_tags = _tag_set(args.tags), _tag_set(args.skip_tags)
    print(f"Playbook: {playbook.name}")
    print()
    for step in playbook.steps:
        marker = '*' if step_matches(step, tags, skip_tags) else ' '
        step_tags = f"  [{', '.join(sorted(step.tags))}]" if step.tags else ''
        note = '  (best-effort)' if step.best_effort else ''
        print(f" {marker} {step.index + 1:>3}. {step.label:<40} {step.kind.value:<14}{step_tags}{note}")
    print()
    print(f"Tags: {', '.join(playbook.tags) if playbook.tags else '(none)'}")
    if playbook.public_roots:
        print(f"Public roots: {', '.join(str(r) for r in playbook.public_roots)}")
    return EXIT_OK


HANDLERS = {
    "run": run_main,
    "check": check_main,
    "validate": validate_main,
    "list": list_main,
}


def print_usage():
    """Print top-level usage."""
    print(f"hostconverge {get_version()}")
    print()
    print("Usage: hostconverge <command> <playbook> [options]")
    print()
    print("Commands:")
    for command, desc in COMMANDS.items():
        print(f"  {command:<10} {desc}")
    print()
    print("Run 'hostconverge <command> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  sudo hostconverge run lab-deploy.yml")
    print("  sudo hostconverge run lab-deploy.yml --tags docker,web")
    print("  hostconverge check lab-deploy.yml --skip-tags firewall")
    print("  hostconverge validate lab-deploy.yml --preflight")


def main(argv: Optional[list] = None) -> int:
    """CLI entry point; dispatch to command handlers."""
    argv = sys.argv[1:] if argv is None else argv

    if not argv:
        print_usage()
        return EXIT_OK
    if argv[0] in ('--help', '-h'):
        print_usage()
        return EXIT_OK
    if argv[0] == '--version':
        print(f"hostconverge {get_version()}")
        return EXIT_OK

    handler = HANDLERS.get(argv[0])
    if handler is None:
        print(f"Error: Unknown command '{argv[0]}'", file=sys.stderr)
        print_usage()
        return EXIT_USAGE
    return handler(argv[1:])


if __name__ == '__main__':
    sys.exit(main())
