"""Firewall rule adapter (ufw)."""

import logging

from hostconverge.actions.base import Adapter
from hostconverge.playbook import Step, StepKind

logger = logging.getLogger(__name__)


class FirewallAdapter(Adapter):
    """Ensure a ufw rule for a port/protocol has been added."""

    kind = StepKind.FIREWALL_RULE

    @staticmethod
    def rule_spec(step: Step) -> list[str]:
        p = step.params
        return [p['rule'], f"{p['port']}/{p['proto']}"]

    def resolve(self, step: Step) -> set[str]:
        # "ufw show added" lists rules even while ufw is inactive
        out = self.check(['ufw', 'show', 'added'])
        return {' '.join(line.split()) for line in out.splitlines() if line.startswith('ufw ')}

    def matches(self, step: Step, observed: set[str]) -> bool:
        return ' '.join(['ufw', *self.rule_spec(step)]) in observed

    def apply(self, step: Step, observed: set[str]) -> None:
        spec = self.rule_spec(step)
        logger.info(f"[{step.label}] Adding firewall rule: {' '.join(spec)}")
        self.check(['ufw', *spec])
