"""Secret resolution for provisioning runs.

Playbooks never carry secret values. Steps name a secret and the store
resolves it through a chain of providers:

1. Values generated earlier in this run (GeneratedSecret steps)
2. Environment: HOSTCONVERGE_SECRET_<NAME>
3. secrets.yaml: a flat mapping, refused unless owner-only (0600/0400)

Every value the store hands out is remembered so it can be redacted from
messages and detected in rendered output.
"""

import logging
import os
import stat
from collections.abc import Mapping
from pathlib import Path
from typing import Iterator, Optional, Protocol, runtime_checkable

from hostconverge.config import ConfigError, parse_yaml
from hostconverge.errors import PermissionDeniedError, ResourceUnavailableError

logger = logging.getLogger(__name__)

ENV_PREFIX = 'HOSTCONVERGE_SECRET_'
REDACTED = '********'


@runtime_checkable
class SecretProvider(Protocol):
    """Protocol for secret sources."""

    def get(self, name: str) -> Optional[str]:
        """Return the secret value, or None if this provider does not have it."""


class EnvSecretProvider:
    """Secrets from HOSTCONVERGE_SECRET_<NAME> environment variables."""

    def __init__(self, prefix: str = ENV_PREFIX, environ: Optional[Mapping] = None):
        self.prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def get(self, name: str) -> Optional[str]:
        key = self.prefix + name.upper().replace('-', '_').replace('.', '_')
        return self._environ.get(key)


class FileSecretProvider:
    """Secrets from a YAML mapping file readable by its owner only."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._data: Optional[dict] = None

    def _load(self) -> dict:
        if self._data is not None:
            return self._data
        if not self.path.exists():
            logger.debug(f"Secrets file {self.path} not present")
            self._data = {}
            return self._data

        mode = stat.S_IMODE(self.path.stat().st_mode)
        if mode & 0o077:
            raise PermissionDeniedError(
                f"Secrets file {self.path} has mode {mode:04o}; "
                f"it must not be group or world accessible (chmod 600)"
            )
        try:
            self._data = parse_yaml(self.path)
        except ConfigError as e:
            raise ResourceUnavailableError(str(e)) from e
        return self._data

    def get(self, name: str) -> Optional[str]:
        value = self._load().get(name)
        return None if value is None else str(value)


class _SecretMapping(Mapping):
    """Read-only view handed to templates as ``secrets``."""

    def __init__(self, store: 'SecretStore'):
        self._store = store

    def __getitem__(self, name: str) -> str:
        return self._store.resolve(name)

    def __iter__(self) -> Iterator[str]:
        return iter(self._store.known_names())

    def __len__(self) -> int:
        return len(self._store.known_names())


class SecretStore:
    """Provider chain plus a registry of every secret value seen in the run."""

    def __init__(self, providers: Optional[list[SecretProvider]] = None):
        self.providers: list[SecretProvider] = list(providers or [])
        self._generated: dict[str, str] = {}
        self._seen: dict[str, str] = {}

    @classmethod
    def default(cls, secrets_file: Optional[Path] = None) -> 'SecretStore':
        """Environment first, then the secrets file if one is configured."""
        providers: list[SecretProvider] = [EnvSecretProvider()]
        if secrets_file is not None:
            providers.append(FileSecretProvider(secrets_file))
        return cls(providers)

    def register(self, name: Optional[str], value: str) -> None:
        """Record a secret produced by this run (e.g. a generated token)."""
        if name:
            self._generated[name] = value
            self._seen[name] = value
        else:
            self._seen[f'_anonymous_{len(self._seen)}'] = value

    def resolve(self, name: str) -> str:
        """Return the secret value or raise ResourceUnavailableError."""
        if name in self._generated:
            return self._generated[name]
        for provider in self.providers:
            value = provider.get(name)
            if value is not None:
                self._seen[name] = value
                return value
        raise ResourceUnavailableError(
            f"Secret '{name}' not found (set {ENV_PREFIX}{name.upper()} "
            f"or add it to the secrets file)"
        )

    def known_names(self) -> list[str]:
        return [n for n in self._seen if not n.startswith('_anonymous_')]

    def values(self) -> list[str]:
        return [v for v in self._seen.values() if v]

    def contained_in(self, text: str) -> list[str]:
        """Names of seen secrets whose raw value appears in text."""
        return sorted(name for name, value in self._seen.items() if value and value in text)

    def redact(self, text: str) -> str:
        # Longest first so a secret containing another is fully masked
        for value in sorted(self.values(), key=len, reverse=True):
            text = text.replace(value, REDACTED)
        return text

    def template_mapping(self) -> Mapping:
        return _SecretMapping(self)
