"""User account adapter (shadow-utils).

Passwords are set only when the account is created, and only from the
secret store. The value is passed to chpasswd on stdin, never on the
command line.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from hostconverge.actions.base import Adapter
from hostconverge.errors import command_error
from hostconverge.playbook import Step, StepKind

logger = logging.getLogger(__name__)


@dataclass
class UserStatus:
    exists: bool
    shell: Optional[str] = None
    groups: set[str] = field(default_factory=set)


class UserAdapter(Adapter):
    """Ensure a local user account exists (or does not)."""

    kind = StepKind.USER_ACCOUNT

    def resolve(self, step: Step) -> UserStatus:
        name = step.params['name']
        cmd = ['getent', 'passwd', name]
        rc, out, err = self.run(cmd)
        if rc == 2:
            return UserStatus(exists=False)
        if rc != 0:
            raise command_error(cmd, rc, err)

        # name:x:uid:gid:gecos:home:shell
        fields = out.strip().split(':')
        shell = fields[6] if len(fields) > 6 else None
        groups = set(self.check(['id', '-nG', name]).split())
        return UserStatus(exists=True, shell=shell, groups=groups)

    def _missing_groups(self, step: Step, observed: UserStatus) -> list[str]:
        return [g for g in step.params['groups'] if g not in observed.groups]

    def matches(self, step: Step, observed: UserStatus) -> bool:
        p = step.params
        if p['state'] == 'absent':
            return not observed.exists
        if not observed.exists:
            return False
        if p['shell'] and observed.shell != p['shell']:
            return False
        return not self._missing_groups(step, observed)

    def apply(self, step: Step, observed: UserStatus) -> None:
        p = step.params
        name = p['name']

        if p['state'] == 'absent':
            logger.info(f"[{step.label}] Removing user {name}")
            self.check(['userdel', name])
            return

        if not observed.exists:
            self._create(step)
            return

        if p['shell'] and observed.shell != p['shell']:
            logger.info(f"[{step.label}] Setting shell for {name} to {p['shell']}")
            self.check(['usermod', '--shell', p['shell'], name])
        missing = self._missing_groups(step, observed)
        if missing:
            logger.info(f"[{step.label}] Adding {name} to groups: {', '.join(missing)}")
            self.check(['usermod', '--append', '--groups', ','.join(missing), name])

    def _create(self, step: Step) -> None:
        p = step.params
        name = p['name']

        # Resolve before creating so a missing secret leaves no half-made account
        password = None
        if p['password_secret']:
            password = self.context.secrets.resolve(p['password_secret'])

        cmd = ['useradd', '--create-home']
        if p['system']:
            cmd.append('--system')
        if p['shell']:
            cmd += ['--shell', p['shell']]
        if p['groups']:
            cmd += ['--groups', ','.join(p['groups'])]
        cmd.append(name)

        logger.info(f"[{step.label}] Creating user {name}")
        self.check(cmd)

        if password is not None:
            logger.info(f"[{step.label}] Setting initial password for {name}")
            self.check(['chpasswd'], stdin=f"{name}:{password}\n")
