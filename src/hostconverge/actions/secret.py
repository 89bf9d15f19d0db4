"""Generated secret adapter.

Generating a token and persisting it are a single step: the file is
created with mode 0600 from the first byte and the value is registered
with the run's secret store so later steps can reference it (and so it
can be kept out of public output). An existing token is reused; only its
permissions and ownership are corrected. A file that holds other
assignments but not env_var gets the token appended, never replaced.
"""

import logging
import os
import secrets
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from hostconverge.actions.base import (
    Adapter,
    apply_attributes,
    attributes_match,
    is_under,
)
from hostconverge.errors import (
    ConflictingStateError,
    PermissionDeniedError,
    ResourceUnavailableError,
)
from hostconverge.playbook import Step, StepKind

logger = logging.getLogger(__name__)

SECRET_MODE = 0o600


@dataclass
class SecretStatus:
    st: Optional[os.stat_result] = None
    value: Optional[str] = None


def format_secret(value: str, env_var: Optional[str], export: bool) -> str:
    if not env_var:
        return f"{value}\n"
    prefix = 'export ' if export else ''
    return f"{prefix}{env_var}={value}\n"


def parse_secret(content: str, env_var: Optional[str]) -> Optional[str]:
    """Extract the token from file content written by format_secret()."""
    for line in content.splitlines():
        line = line.strip()
        if not line:
            continue
        if not env_var:
            return line
        if line.startswith('export '):
            line = line[len('export '):].lstrip()
        if line.startswith(f"{env_var}="):
            return line.split('=', 1)[1].strip().strip('"\'') or None
    return None


class SecretAdapter(Adapter):
    """Generate a random token into an owner-only file."""

    kind = StepKind.GENERATED_SECRET

    def resolve(self, step: Step) -> SecretStatus:
        p = step.params
        path = Path(p['path'])

        for root in self.context.public_roots:
            if is_under(path, root):
                raise PermissionDeniedError(
                    f"Refusing to store a secret at {path}: it is under public root {root}"
                )

        try:
            st = os.lstat(path)
        except FileNotFoundError:
            return SecretStatus()

        if not stat.S_ISREG(st.st_mode):
            raise ConflictingStateError(f"{path} exists and is not a regular file")

        value = parse_secret(path.read_text(encoding='utf-8'), p['env_var'])
        if value:
            self.context.secrets.register(p['register'], value)
        return SecretStatus(st=st, value=value)

    def matches(self, step: Step, observed: SecretStatus) -> bool:
        p = step.params
        if observed.st is None or not observed.value:
            return False
        return attributes_match(observed.st, p['owner'], p['group'], SECRET_MODE)

    def plan(self, step: Step, observed: SecretStatus) -> None:
        # Later steps may reference the name; give them a stand-in that is never written
        p = step.params
        if not observed.value:
            self.context.secrets.register(p['register'], secrets.token_hex(p['bytes']))

    def apply(self, step: Step, observed: SecretStatus) -> None:
        p = step.params
        path = Path(p['path'])

        if observed.st is not None and observed.value:
            logger.info(f"[{step.label}] Restricting {path} to owner-only")
            apply_attributes(path, p['owner'], p['group'], SECRET_MODE)
            return

        if not path.parent.is_dir():
            raise ResourceUnavailableError(f"Parent directory {path.parent} does not exist")

        existing = ''
        if observed.st is not None:
            existing = path.read_text(encoding='utf-8')
            if existing and not existing.endswith('\n'):
                existing += '\n'

        value = secrets.token_hex(p['bytes'])
        tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, SECRET_MODE)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(existing + format_secret(value, p['env_var'], p['export']))
            # O_CREAT mode is filtered by umask; set it explicitly
            apply_attributes(tmp, p['owner'], p['group'], SECRET_MODE)
            os.replace(tmp, path)
        finally:
            if tmp.exists():
                tmp.unlink()

        self.context.secrets.register(p['register'], value)
        if existing.strip():
            logger.info(f"[{step.label}] Appended {p['env_var']} to {path} (mode 0600)")
        else:
            logger.info(f"[{step.label}] Generated secret at {path} (mode 0600)")
