"""Per-kind adapters that inspect and converge host resources."""

from typing import Optional

from hostconverge.actions.archive import ArchiveAdapter
from hostconverge.actions.base import Adapter, RunContext
from hostconverge.actions.container import ContainerAdapter
from hostconverge.actions.file import FileAdapter
from hostconverge.actions.firewall import FirewallAdapter
from hostconverge.actions.package import PackageAdapter
from hostconverge.actions.secret import SecretAdapter
from hostconverge.actions.service import ServiceAdapter
from hostconverge.actions.template import TemplateAdapter
from hostconverge.actions.user import UserAdapter
from hostconverge.playbook import StepKind

# Kind -> adapter class
ADAPTERS: dict[StepKind, type[Adapter]] = {
    cls.kind: cls
    for cls in (
        PackageAdapter,
        ServiceAdapter,
        UserAdapter,
        FileAdapter,
        ArchiveAdapter,
        TemplateAdapter,
        ContainerAdapter,
        SecretAdapter,
        FirewallAdapter,
    )
}


def build_adapters(context: RunContext,
                   overrides: Optional[dict[StepKind, Adapter]] = None) -> dict[StepKind, Adapter]:
    """Instantiate one adapter per kind, sharing a run context."""
    adapters = {kind: cls(context) for kind, cls in ADAPTERS.items()}
    if overrides:
        adapters.update(overrides)
    return adapters


__all__ = [
    'ADAPTERS',
    'Adapter',
    'RunContext',
    'build_adapters',
    'ArchiveAdapter',
    'ContainerAdapter',
    'FileAdapter',
    'FirewallAdapter',
    'PackageAdapter',
    'SecretAdapter',
    'ServiceAdapter',
    'TemplateAdapter',
    'UserAdapter',
]
