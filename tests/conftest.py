"""Shared pytest fixtures for hostconverge tests."""

import grp
import json
import os
import pwd
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from hostconverge.actions.base import RunContext
from hostconverge.playbook import parse_step
from hostconverge.secret_store import SecretStore


CURRENT_USER = pwd.getpwuid(os.getuid()).pw_name
CURRENT_GROUP = grp.getgrgid(os.getgid()).gr_name


class FakeHost:
    """In-memory stand-in for the host tools the adapters shell out to.

    Patched in place of run_command; every call is recorded in ``calls``.
    ``failures`` maps a command prefix (e.g. 'ufw allow') to the
    (rc, stdout, stderr) it should return instead.
    """

    def __init__(self):
        self.packages: dict[str, str] = {}
        self.apt_updated = False
        self.users: dict[str, dict] = {}
        self.services: dict[str, dict] = {}
        self.containers: dict[str, dict] = {}
        self.ufw_rules: list[str] = []
        self.failures: dict[str, tuple[int, str, str]] = {}
        self.calls: list[list[str]] = []
        self.stdin: list[str] = []

    def commands(self, prefix: str) -> list[str]:
        """Recorded commands starting with prefix, joined with spaces."""
        return [' '.join(c) for c in self.calls if ' '.join(c).startswith(prefix)]

    def run(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        if kwargs.get('stdin'):
            self.stdin.append(kwargs['stdin'])
        joined = ' '.join(cmd)
        for prefix, result in self.failures.items():
            if joined.startswith(prefix):
                return result

        handler = getattr(self, f"_{cmd[0].replace('-', '_')}", None)
        if handler is None:
            return 127, '', f"{cmd[0]}: command not found"
        return handler(cmd[1:])

    # apt / dpkg

    def _dpkg_query(self, args):
        name = args[-1]
        if name not in self.packages:
            return 1, '', f"dpkg-query: no packages found matching {name}"
        return 0, f"install ok installed {self.packages[name]}", ''

    def _apt_get(self, args):
        if args[0] == 'update':
            self.apt_updated = True
            return 0, 'Reading package lists... Done', ''
        target = args[-1]
        name, _, version = target.partition('=')
        if args[0] == 'install':
            self.packages[name] = version or '1.0-1'
        elif args[0] == 'remove':
            self.packages.pop(name, None)
        return 0, '', ''

    # users

    def _getent(self, args):
        name = args[-1]
        user = self.users.get(name)
        if user is None:
            return 2, '', ''
        return 0, f"{name}:x:1001:1001::/home/{name}:{user['shell']}\n", ''

    def _id(self, args):
        name = args[-1]
        if name not in self.users:
            return 1, '', f"id: '{name}': no such user"
        return 0, ' '.join([name, *self.users[name]['groups']]) + '\n', ''

    def _useradd(self, args):
        name = args[-1]
        shell, groups = '/bin/sh', []
        if '--shell' in args:
            shell = args[args.index('--shell') + 1]
        if '--groups' in args:
            groups = args[args.index('--groups') + 1].split(',')
        if name in self.users:
            return 9, '', f"useradd: user '{name}' already exists"
        self.users[name] = {'shell': shell, 'groups': groups}
        return 0, '', ''

    def _usermod(self, args):
        name = args[-1]
        if '--shell' in args:
            self.users[name]['shell'] = args[args.index('--shell') + 1]
        if '--groups' in args:
            self.users[name]['groups'] += args[args.index('--groups') + 1].split(',')
        return 0, '', ''

    def _userdel(self, args):
        self.users.pop(args[-1], None)
        return 0, '', ''

    def _chpasswd(self, _args):
        return 0, '', ''

    # systemd

    def _systemctl(self, args):
        verb, name = args[0], args[1]
        if verb == 'show':
            svc = self.services.get(name)
            if svc is None:
                return 0, 'LoadState=not-found\nActiveState=inactive\nUnitFileState=\n', ''
            active = 'active' if svc['active'] else 'inactive'
            enabled = 'enabled' if svc['enabled'] else 'disabled'
            return 0, f"LoadState=loaded\nActiveState={active}\nUnitFileState={enabled}\n", ''
        svc = self.services[name]
        if verb in ('start', 'stop'):
            svc['active'] = verb == 'start'
        elif verb in ('enable', 'disable'):
            svc['enabled'] = verb == 'enable'
        return 0, '', ''

    # docker

    def _docker(self, args):
        verb = args[0]
        if verb == 'inspect':
            name = args[-1]
            c = self.containers.get(name)
            if c is None:
                return 1, '[]', f"Error: No such container: {name}"
            return 0, json.dumps([{
                'Name': f"/{name}",
                'State': {'Running': c['running']},
                'Config': {'Image': c['image'], 'Labels': c['labels']},
            }]), ''
        if verb in ('run', 'create'):
            name = args[args.index('--name') + 1]
            label_key, _, label_value = args[args.index('--label') + 1].partition('=')
            self.containers[name] = {
                'image': args[-1],
                'running': verb == 'run',
                'labels': {label_key: label_value},
                'args': list(args),
            }
            return 0, 'f00dfeed\n', ''
        name = args[-1]
        if verb == 'rm':
            self.containers.pop(name, None)
        elif verb in ('start', 'stop'):
            self.containers[name]['running'] = verb == 'start'
        return 0, name, ''

    # ufw

    def _ufw(self, args):
        if args[:2] == ['show', 'added']:
            lines = ["Added user rules (see 'ufw status' for running firewall):"]
            lines += self.ufw_rules or ['(None)']
            return 0, '\n'.join(lines) + '\n', ''
        rule = ' '.join(['ufw', *args])
        if rule not in self.ufw_rules:
            self.ufw_rules.append(rule)
        return 0, 'Rule added\n', ''


@pytest.fixture
def fake_host():
    """A FakeHost patched in as the adapters' command runner."""
    host = FakeHost()
    with patch('hostconverge.actions.base.run_command', side_effect=host.run):
        yield host


@pytest.fixture
def secrets():
    """Secret store with no external providers."""
    return SecretStore([])


@pytest.fixture
def context(tmp_path, secrets):
    """Run context with a temporary state directory."""
    return RunContext(secrets=secrets, state_dir=tmp_path / 'state')


@pytest.fixture
def make_step():
    """Build a Step from a kind key and its parameters.

    Example: make_step('file', path='/tmp/x', state='directory', tags=['a'])
    ``label`` sets the step's display name; ``name=`` goes to the kind's params.
    """
    def _make(kind, index=0, label='', tags=None, best_effort=False, **params):
        raw = {kind: params}
        if label:
            raw['name'] = label
        if tags:
            raw['tags'] = tags
        if best_effort:
            raw['best_effort'] = True
        return parse_step(raw, index, {})
    return _make
