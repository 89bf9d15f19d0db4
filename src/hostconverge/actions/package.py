"""Package adapter (apt/dpkg)."""

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from hostconverge.actions.base import Adapter
from hostconverge.errors import command_error
from hostconverge.playbook import Step, StepKind

logger = logging.getLogger(__name__)

CACHE_STAMP = Path('/var/lib/apt/periodic/update-success-stamp')
LISTS_DIR = Path('/var/lib/apt/lists')


@dataclass
class PackageStatus:
    """Observed package state."""
    installed: bool
    version: Optional[str] = None
    cache_age: Optional[float] = None  # seconds since last apt-get update


def _apt_env() -> dict:
    env = dict(os.environ)
    env['DEBIAN_FRONTEND'] = 'noninteractive'
    return env


class PackageAdapter(Adapter):
    """Ensure a package is installed (optionally pinned) or absent."""

    kind = StepKind.PACKAGE

    def resolve(self, step: Step) -> PackageStatus:
        p = step.params
        installed, version = False, None
        if p['name']:
            installed, version = self._query(p['name'])
        cache_age = self._cache_age() if p['update_cache'] else None
        return PackageStatus(installed=installed, version=version, cache_age=cache_age)

    def _query(self, name: str) -> tuple[bool, Optional[str]]:
        """Return (installed, version) from dpkg's database."""
        cmd = ['dpkg-query', '-W', '-f=${Status} ${Version}', name]
        rc, out, err = self.run(cmd)
        if rc == 1 and 'no packages found' in err.lower():
            return False, None
        if rc != 0:
            raise command_error(cmd, rc, err)
        # e.g. "install ok installed 26.1.5+dfsg1-2"
        fields = out.split()
        if len(fields) >= 3 and fields[2] == 'installed':
            return True, fields[3] if len(fields) > 3 else None
        return False, None

    def _cache_age(self) -> Optional[float]:
        for marker in (CACHE_STAMP, LISTS_DIR):
            if marker.exists():
                return time.time() - marker.stat().st_mtime
        return None

    def _cache_fresh(self, step: Step, observed: PackageStatus) -> bool:
        if not step.params['update_cache']:
            return True
        return observed.cache_age is not None and observed.cache_age < step.params['cache_valid_time']

    def _package_converged(self, step: Step, observed: PackageStatus) -> bool:
        p = step.params
        if not p['name']:
            return True
        if p['state'] == 'absent':
            return not observed.installed
        if not observed.installed:
            return False
        return p['version'] is None or observed.version == p['version']

    def matches(self, step: Step, observed: PackageStatus) -> bool:
        return self._cache_fresh(step, observed) and self._package_converged(step, observed)

    def apply(self, step: Step, observed: PackageStatus) -> None:
        p = step.params
        if not self._cache_fresh(step, observed):
            logger.info(f"[{step.label}] Updating apt cache...")
            self.check(['apt-get', 'update'], env=_apt_env())

        if self._package_converged(step, observed):
            return

        if p['state'] == 'absent':
            logger.info(f"[{step.label}] Removing {p['name']}...")
            self.check(['apt-get', 'remove', '-y', p['name']], env=_apt_env())
            return

        target = f"{p['name']}={p['version']}" if p['version'] else p['name']
        logger.info(f"[{step.label}] Installing {target}...")
        self.check(['apt-get', 'install', '-y', target], env=_apt_env())
