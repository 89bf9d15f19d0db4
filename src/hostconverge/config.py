"""Run configuration.

Engine-level paths are resolved per setting in this order:
1. Explicit argument (CLI flag)
2. Environment variable (HOSTCONVERGE_*)
3. Built-in default

    state_dir     HOSTCONVERGE_STATE_DIR     /var/lib/hostconverge
    report_dir    HOSTCONVERGE_REPORT_DIR    <state_dir>/reports
    lock_file     HOSTCONVERGE_LOCK_FILE     <state_dir>/run.lock
    secrets_file  HOSTCONVERGE_SECRETS_FILE  /etc/hostconverge/secrets.yaml
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import yaml

DEFAULT_STATE_DIR = Path('/var/lib/hostconverge')
DEFAULT_SECRETS_FILE = Path('/etc/hostconverge/secrets.yaml')
DEFAULT_COMMAND_TIMEOUT = 600

PathLike = Union[str, Path]


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class RunConfig:
    """Paths and limits for one invocation of the engine."""
    state_dir: Path
    report_dir: Path
    lock_file: Path
    secrets_file: Path
    command_timeout: int = DEFAULT_COMMAND_TIMEOUT

    def __post_init__(self):
        for attr in ('state_dir', 'report_dir', 'lock_file', 'secrets_file'):
            value = getattr(self, attr)
            if isinstance(value, str):
                setattr(self, attr, Path(value))

    @classmethod
    def discover(
        cls,
        state_dir: Optional[PathLike] = None,
        report_dir: Optional[PathLike] = None,
        lock_file: Optional[PathLike] = None,
        secrets_file: Optional[PathLike] = None,
        command_timeout: Optional[int] = None,
    ) -> 'RunConfig':
        """Build a RunConfig from arguments, environment and defaults."""
        state = Path(state_dir or os.environ.get('HOSTCONVERGE_STATE_DIR') or DEFAULT_STATE_DIR)
        report = Path(report_dir or os.environ.get('HOSTCONVERGE_REPORT_DIR') or state / 'reports')
        lock = Path(lock_file or os.environ.get('HOSTCONVERGE_LOCK_FILE') or state / 'run.lock')
        secrets = Path(secrets_file or os.environ.get('HOSTCONVERGE_SECRETS_FILE')
                       or DEFAULT_SECRETS_FILE)

        if command_timeout is None:
            raw = os.environ.get('HOSTCONVERGE_COMMAND_TIMEOUT')
            try:
                command_timeout = int(raw) if raw else DEFAULT_COMMAND_TIMEOUT
            except ValueError as e:
                raise ConfigError(f"HOSTCONVERGE_COMMAND_TIMEOUT={raw} is not an integer") from e

        return cls(
            state_dir=state,
            report_dir=report,
            lock_file=lock,
            secrets_file=secrets,
            command_timeout=command_timeout,
        )

    def ensure_state_dir(self) -> None:
        """Create the state directory, owner-only."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.state_dir, 0o700)


def parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return its mapping contents."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"File not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at top level of {path}")
    return data
