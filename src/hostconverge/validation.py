"""Pre-flight validation checks for playbooks.

These run before any step executes, catching a missing tool or source
file up front with an actionable message instead of failing halfway
through a run. Problems that only affect best-effort steps are reported
as warnings and do not block the run.
"""

import logging
import os
import shutil
from pathlib import Path
from typing import Iterable, Optional

from hostconverge.playbook import Step, StepKind

logger = logging.getLogger(__name__)

# Host tools each step kind shells out to
REQUIRED_TOOLS: dict[StepKind, list[str]] = {
    StepKind.PACKAGE: ['dpkg-query', 'apt-get'],
    StepKind.SERVICE_STATE: ['systemctl'],
    StepKind.USER_ACCOUNT: ['getent', 'id', 'useradd', 'usermod', 'userdel'],
    StepKind.CONTAINER_RUN: ['docker'],
    StepKind.FIREWALL_RULE: ['ufw'],
}

_INSTALL_HINTS = {
    'docker': "Install a container runtime first (e.g. a 'package: {name: docker.io}' step)",
    'ufw': "apt-get install ufw",
    'apt-get': "Only Debian-family hosts are supported",
    'dpkg-query': "Only Debian-family hosts are supported",
}

CATEGORIES = {
    'privileges': 'Privileges',
    'tools': 'Host tools',
    'sources': 'Source files',
}


def _empty_results() -> dict[str, dict[str, list[str]]]:
    return {key: {'passed': [], 'failed': [], 'warnings': []} for key in CATEGORIES}


def step_tools(step: Step) -> list[str]:
    """Executables a step needs, including its template validate command."""
    tools = list(REQUIRED_TOOLS.get(step.kind, []))
    if step.kind == StepKind.USER_ACCOUNT and step.params.get('password_secret'):
        tools.append('chpasswd')
    if step.kind == StepKind.TEMPLATED_FILE and step.params.get('validate'):
        tools.append(step.params['validate'].split()[0])
    return tools


def validate_privileges(check_mode: bool = False) -> tuple[list[str], list[str]]:
    """Converging a host needs root; check mode only warns.

    Returns:
        (errors, warnings) tuple
    """
    if os.geteuid() == 0:
        return [], []
    message = (
        "Not running as root\n"
        "  Package, user, service and ownership changes will fail\n"
        "  Run with: sudo hostconverge run <playbook>"
    )
    if check_mode:
        return [], [message]
    return [message], []


def validate_tools(steps: Iterable[Step]) -> tuple[list[str], list[str], list[str]]:
    """Check that every tool the steps shell out to is on PATH.

    A step that installs a tool (docker.io before a container step) makes
    later steps that need it pass, since the tool will exist by then.

    Returns:
        (passed, errors, warnings) tuple
    """
    passed: list[str] = []
    errors: list[str] = []
    warnings: list[str] = []
    missing: dict[str, list[Step]] = {}
    installed_by_playbook: set[str] = set()

    for step in steps:
        if step.kind == StepKind.PACKAGE and step.params.get('name'):
            installed_by_playbook.add(step.params['name'])
        for tool in step_tools(step):
            if shutil.which(tool):
                if tool not in passed:
                    passed.append(tool)
                continue
            if _installed_earlier(tool, installed_by_playbook):
                continue
            missing.setdefault(tool, []).append(step)

    for tool, needing in missing.items():
        labels = ', '.join(s.label for s in needing)
        hint = _INSTALL_HINTS.get(tool, f"Install '{tool}'")
        message = f"'{tool}' not found on PATH (needed by: {labels})\n  {hint}"
        if all(s.best_effort for s in needing):
            warnings.append(message)
        else:
            errors.append(message)

    return passed, errors, warnings


def _installed_earlier(tool: str, packages: set[str]) -> bool:
    if tool == 'docker':
        return bool(packages & {'docker.io', 'docker-ce', 'podman-docker'})
    return tool in packages


def validate_sources(steps: Iterable[Step]) -> tuple[list[str], list[str]]:
    """Check that local template and archive sources exist.

    Returns:
        (passed, errors) tuple
    """
    passed: list[str] = []
    errors: list[str] = []
    for step in steps:
        if step.kind not in (StepKind.TEMPLATED_FILE, StepKind.ARCHIVE_EXTRACT):
            continue
        src = step.params.get('src')
        if not src:
            continue
        if Path(src).is_file():
            passed.append(f"{src} exists")
        else:
            errors.append(f"Source file {src} not found\n  Referenced by step: {step.label}")
    return passed, errors


def run_preflight_checks(steps: list[Step], check_mode: bool = False) -> tuple[bool, dict]:
    """Run preflight checks for the steps about to be executed.

    Args:
        steps: Selected steps, in run order
        check_mode: If True, missing root privileges only warn

    Returns:
        (success, results) tuple where results contains check details
    """
    results = _empty_results()

    errors, warnings = validate_privileges(check_mode)
    if errors:
        results['privileges']['failed'].extend(errors)
    elif not warnings:
        results['privileges']['passed'].append("Running as root")
    results['privileges']['warnings'].extend(warnings)

    passed, errors, warnings = validate_tools(steps)
    results['tools']['passed'].extend(passed)
    results['tools']['failed'].extend(errors)
    results['tools']['warnings'].extend(warnings)

    passed, errors = validate_sources(steps)
    results['sources']['passed'].extend(passed)
    results['sources']['failed'].extend(errors)

    success = all(not cat['failed'] for cat in results.values())
    for cat in results.values():
        for message in cat['failed']:
            logger.debug(f"Preflight: {message.splitlines()[0]}")
    return success, results


def format_preflight_results(playbook: str, results: dict, hostname: Optional[str] = None) -> str:
    """Format preflight check results for display.

    Args:
        playbook: Playbook name that was checked
        results: Results dict from run_preflight_checks
        hostname: Host name for the header (optional)

    Returns:
        Formatted string for display
    """
    where = f" on '{hostname}'" if hostname else ''
    lines = [f"\nPreflight checks for '{playbook}'{where}:\n"]

    for key, name in CATEGORIES.items():
        category = results.get(key, {'passed': [], 'failed': [], 'warnings': []})
        if not (category['passed'] or category['failed'] or category['warnings']):
            continue
        lines.append(f"{name}:")
        for item in category['passed']:
            lines.append(f"✓ {item}")
        for marker, items in (('✗', category['failed']), ('!', category['warnings'])):
            for item in items:
                # Handle multi-line messages
                first_line, *rest = item.split('\n')
                lines.append(f"{marker} {first_line}")
                for line in rest:
                    lines.append(f"  {line}")
        lines.append("")

    if all(not cat['failed'] for cat in results.values()):
        lines.append("All checks passed. Ready to run.")
    else:
        lines.append("Some checks failed. Fix issues before running.")

    return '\n'.join(lines)
