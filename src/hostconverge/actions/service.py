"""Service adapter (systemd)."""

import logging
from dataclasses import dataclass
from typing import Optional

from hostconverge.actions.base import Adapter
from hostconverge.errors import ResourceUnavailableError
from hostconverge.playbook import Step, StepKind

logger = logging.getLogger(__name__)


@dataclass
class ServiceStatus:
    active: bool
    enabled: Optional[bool]


class ServiceAdapter(Adapter):
    """Ensure a systemd unit is started/stopped and enabled/disabled."""

    kind = StepKind.SERVICE_STATE

    def resolve(self, step: Step) -> ServiceStatus:
        name = step.params['name']
        out = self.check([
            'systemctl', 'show', name,
            '--property=LoadState,ActiveState,UnitFileState',
        ])
        props = {}
        for line in out.splitlines():
            if '=' in line:
                key, value = line.split('=', 1)
                props[key.strip()] = value.strip()

        if props.get('LoadState') == 'not-found':
            raise ResourceUnavailableError(f"Service unit '{name}' not found")

        unit_state = props.get('UnitFileState', '')
        enabled: Optional[bool] = None
        if unit_state in ('enabled', 'enabled-runtime', 'static', 'alias'):
            enabled = True
        elif unit_state in ('disabled', 'masked', 'masked-runtime'):
            enabled = False

        return ServiceStatus(
            active=props.get('ActiveState') in ('active', 'activating', 'reloading'),
            enabled=enabled,
        )

    def _active_ok(self, step: Step, observed: ServiceStatus) -> bool:
        return observed.active == (step.params['state'] == 'started')

    def _enabled_ok(self, step: Step, observed: ServiceStatus) -> bool:
        wanted = step.params['enabled']
        return wanted is None or observed.enabled == bool(wanted)

    def matches(self, step: Step, observed: ServiceStatus) -> bool:
        return self._active_ok(step, observed) and self._enabled_ok(step, observed)

    def apply(self, step: Step, observed: ServiceStatus) -> None:
        name = step.params['name']
        if not self._enabled_ok(step, observed):
            verb = 'enable' if step.params['enabled'] else 'disable'
            logger.info(f"[{step.label}] systemctl {verb} {name}")
            self.check(['systemctl', verb, name])
        if not self._active_ok(step, observed):
            verb = 'start' if step.params['state'] == 'started' else 'stop'
            logger.info(f"[{step.label}] systemctl {verb} {name}")
            self.check(['systemctl', verb, name])
