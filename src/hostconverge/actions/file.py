"""File and directory state adapter."""

import logging
import os
import shutil
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from hostconverge.actions.base import Adapter, apply_attributes, attributes_match
from hostconverge.errors import ConflictingStateError
from hostconverge.playbook import Step, StepKind

logger = logging.getLogger(__name__)


@dataclass
class FileStatus:
    """Observed path state; None from resolve() means the path is absent."""
    type: str  # 'directory', 'file', 'link', 'other'
    st: os.stat_result


def stat_path(path: Path) -> Optional[FileStatus]:
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return None
    if stat.S_ISDIR(st.st_mode):
        kind = 'directory'
    elif stat.S_ISREG(st.st_mode):
        kind = 'file'
    elif stat.S_ISLNK(st.st_mode):
        kind = 'link'
    else:
        kind = 'other'
    return FileStatus(type=kind, st=st)


def _walk(root: Path):
    """Paths beneath root. Symlinks are skipped: never compared, never modified."""
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            child = Path(dirpath) / name
            if not child.is_symlink():
                yield child


class FileAdapter(Adapter):
    """Ensure a path is a directory, a regular file, or absent."""

    kind = StepKind.FILE_STATE

    def resolve(self, step: Step) -> Optional[FileStatus]:
        return stat_path(Path(step.params['path']))

    def matches(self, step: Step, observed: Optional[FileStatus]) -> bool:
        p = step.params
        if p['state'] == 'absent':
            return observed is None
        if observed is None:
            return False
        if observed.type != p['state']:
            raise ConflictingStateError(
                f"{p['path']} exists as {observed.type}, expected {p['state']}"
            )
        if not attributes_match(observed.st, p['owner'], p['group'], p['mode']):
            return False
        if p['recurse'] and observed.type == 'directory':
            for child in _walk(Path(p['path'])):
                if not attributes_match(os.lstat(child), p['owner'], p['group'], p['mode']):
                    return False
        return True

    def apply(self, step: Step, observed: Optional[FileStatus]) -> None:
        p = step.params
        path = Path(p['path'])

        if p['state'] == 'absent':
            logger.info(f"[{step.label}] Removing {path}")
            if observed is not None and observed.type == 'directory':
                shutil.rmtree(path)
            else:
                path.unlink()
            return

        if observed is None:
            logger.info(f"[{step.label}] Creating {p['state']} {path}")
            if p['state'] == 'directory':
                path.mkdir(parents=True)
            else:
                path.touch()

        apply_attributes(path, p['owner'], p['group'], p['mode'])
        if p['recurse'] and p['state'] == 'directory':
            for child in _walk(path):
                apply_attributes(child, p['owner'], p['group'], p['mode'])
