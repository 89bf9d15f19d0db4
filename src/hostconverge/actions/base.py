"""Adapter base class and shared helpers.

An adapter is the narrow interface between a step kind and the host:

    observed = adapter.resolve(step)        # inspect, never mutate
    adapter.matches(step, observed)         # kind-specific equality
    adapter.apply(step, observed)           # minimal mutation
    adapter.plan(step, observed)            # check mode only, instead of apply

Adapters raise StepError subclasses; they never return failure values.
"""

import grp
import logging
import os
import pwd
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from hostconverge.common import run_command
from hostconverge.errors import ResourceUnavailableError, command_error
from hostconverge.playbook import Step, StepKind
from hostconverge.secret_store import SecretStore

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Everything an adapter may consult besides the step itself.

    Attributes:
        secrets: Secret store for the run
        state_dir: Engine state directory (archive markers, download cache)
        vars: Rendered playbook vars, exposed to templates
        public_roots: Directories whose contents are publicly served
        command_timeout: Timeout for host commands in seconds
    """
    secrets: SecretStore
    state_dir: Path
    vars: dict = field(default_factory=dict)
    public_roots: tuple[Path, ...] = ()
    command_timeout: int = 600


class Adapter:
    """Base class for per-kind adapters."""

    kind: StepKind

    def __init__(self, context: RunContext):
        self.context = context

    def resolve(self, step: Step) -> Any:
        raise NotImplementedError

    def matches(self, step: Step, observed: Any) -> bool:
        raise NotImplementedError

    def apply(self, step: Step, observed: Any) -> None:
        raise NotImplementedError

    def plan(self, step: Step, observed: Any) -> None:
        """Check-mode stand-in for apply(): record what later steps would see, touch nothing."""

    def run(self, cmd: list[str], stdin: Optional[str] = None,
            env: Optional[dict] = None, timeout: Optional[int] = None) -> tuple[int, str, str]:
        """Run a host command; returns (rc, stdout, stderr)."""
        return run_command(
            cmd,
            timeout=timeout or self.context.command_timeout,
            env=env,
            stdin=stdin,
        )

    def check(self, cmd: list[str], stdin: Optional[str] = None,
              env: Optional[dict] = None, timeout: Optional[int] = None) -> str:
        """Run a host command and raise a classified StepError on failure."""
        rc, out, err = self.run(cmd, stdin=stdin, env=env, timeout=timeout)
        if rc != 0:
            raise command_error(cmd, rc, err or out)
        return out


def _lexically_under(path: Path, root: Path) -> bool:
    p = Path(os.path.normpath(os.path.abspath(path)))
    r = Path(os.path.normpath(os.path.abspath(root)))
    return p == r or r in p.parents


def is_under(path: Path, root: Path) -> bool:
    """True if path is root or lies beneath it, by name or after resolving symlinks.

    The path itself need not exist; its existing ancestors are resolved.
    """
    if _lexically_under(path, root):
        return True
    return _lexically_under(Path(path).resolve(), Path(root).resolve())


def is_public_path(path: Path, mode: Optional[int], public_roots: tuple[Path, ...]) -> bool:
    """A path is public if others may read it or it sits under a served root."""
    if mode is not None and mode & 0o007:
        return True
    return any(is_under(path, root) for root in public_roots)


def lookup_uid(owner: Optional[str]) -> Optional[int]:
    if owner is None:
        return None
    if str(owner).isdigit():
        return int(owner)
    try:
        return pwd.getpwnam(owner).pw_uid
    except KeyError as e:
        raise ResourceUnavailableError(f"User '{owner}' does not exist") from e


def lookup_gid(group: Optional[str]) -> Optional[int]:
    if group is None:
        return None
    if str(group).isdigit():
        return int(group)
    try:
        return grp.getgrnam(group).gr_gid
    except KeyError as e:
        raise ResourceUnavailableError(f"Group '{group}' does not exist") from e


def attributes_match(st: os.stat_result, owner: Optional[str], group: Optional[str],
                     mode: Optional[int]) -> bool:
    """Compare ownership and permission bits; None means unmanaged."""
    uid = lookup_uid(owner)
    gid = lookup_gid(group)
    if uid is not None and st.st_uid != uid:
        return False
    if gid is not None and st.st_gid != gid:
        return False
    if mode is not None and stat.S_IMODE(st.st_mode) != mode:
        return False
    return True


def apply_attributes(path: Path, owner: Optional[str], group: Optional[str],
                     mode: Optional[int]) -> None:
    """Set ownership and permission bits on path; None leaves a field alone."""
    uid = lookup_uid(owner)
    gid = lookup_gid(group)
    if uid is not None or gid is not None:
        os.chown(path, -1 if uid is None else uid, -1 if gid is None else gid,
                 follow_symlinks=False)
    if mode is not None:
        os.chmod(path, mode)
