"""Playbook loading and validation.

A playbook is a YAML document with an ordered list of steps:

    vars:
      app_user: appadmin
      work_dir: /opt/webapp
    settings:
      public_roots: [/var/www]
    steps:
      - name: Install Docker
        package: {name: docker.io}
        tags: [docker]
      - name: Web root
        file: {path: "{{ work_dir }}", state: directory, owner: "{{ app_user }}", mode: '0755'}
        tags: [deploy]

Each step carries exactly one kind key. String parameters are rendered
with Jinja2 against ``vars`` at load time, so step identities are
concrete before the run starts. Template bodies (``template.content``)
are rendered later, at apply time, because they may reference secrets.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional

from jinja2 import Environment, StrictUndefined, TemplateError

from hostconverge.config import ConfigError, parse_yaml

logger = logging.getLogger(__name__)


class StepKind(str, Enum):
    """Resource kinds, keyed by the YAML key that declares them."""
    PACKAGE = 'package'
    SERVICE_STATE = 'service'
    USER_ACCOUNT = 'user'
    FILE_STATE = 'file'
    ARCHIVE_EXTRACT = 'archive'
    TEMPLATED_FILE = 'template'
    CONTAINER_RUN = 'container'
    GENERATED_SECRET = 'secret'
    FIREWALL_RULE = 'firewall_rule'


@dataclass(frozen=True)
class Step:
    """One declared unit of desired host state.

    Attributes:
        kind: Resource kind
        identity: Name or path uniquely identifying the target resource
        params: Kind-specific desired state, defaults filled in
        tags: Selectors for partial runs
        name: Display label from the playbook (optional)
        best_effort: If True, a failure is logged and the run continues
        index: Position in the playbook (0-based)
    """
    kind: StepKind
    identity: str
    params: dict = field(default_factory=dict, hash=False, compare=True)
    tags: frozenset[str] = frozenset()
    name: str = ''
    best_effort: bool = False
    index: int = 0

    @property
    def label(self) -> str:
        return self.name or f"{self.kind.value} {self.identity}"


@dataclass
class Playbook:
    """A loaded playbook: ordered steps plus the context they run in."""
    name: str
    steps: list[Step]
    vars: dict = field(default_factory=dict)
    public_roots: tuple[Path, ...] = ()
    path: Optional[Path] = None

    @property
    def tags(self) -> list[str]:
        found: set[str] = set()
        for step in self.steps:
            found.update(step.tags)
        return sorted(found)


_REQUIRED = object()

# Per-kind parameters: name -> default (or _REQUIRED)
_PARAMS: dict[StepKind, dict[str, Any]] = {
    StepKind.PACKAGE: {
        'name': None, 'state': 'present', 'version': None,
        'update_cache': False, 'cache_valid_time': 3600,
    },
    StepKind.SERVICE_STATE: {
        'name': _REQUIRED, 'state': 'started', 'enabled': None,
    },
    StepKind.USER_ACCOUNT: {
        'name': _REQUIRED, 'state': 'present', 'shell': None, 'groups': [],
        'system': False, 'password_secret': None,
    },
    StepKind.FILE_STATE: {
        'path': _REQUIRED, 'state': 'directory', 'owner': None, 'group': None,
        'mode': None, 'recurse': False,
    },
    StepKind.ARCHIVE_EXTRACT: {
        'dest': _REQUIRED, 'url': None, 'src': None, 'checksum': None,
        'owner': None, 'group': None, 'strip_components': 0,
        'download_path': None, 'timeout': 300,
    },
    StepKind.TEMPLATED_FILE: {
        'dest': _REQUIRED, 'src': None, 'content': None, 'owner': None,
        'group': None, 'mode': None, 'validate': None,
    },
    StepKind.CONTAINER_RUN: {
        'name': _REQUIRED, 'image': _REQUIRED, 'state': 'started', 'ports': [],
        'volumes': [], 'env': {}, 'env_file': None, 'restart_policy': 'no',
    },
    StepKind.GENERATED_SECRET: {
        'path': _REQUIRED, 'bytes': 32, 'env_var': None, 'export': False,
        'register': None, 'owner': None, 'group': None,
    },
    StepKind.FIREWALL_RULE: {
        'port': _REQUIRED, 'proto': 'tcp', 'rule': 'allow',
    },
}

_CHOICES: dict[tuple[StepKind, str], set] = {
    (StepKind.PACKAGE, 'state'): {'present', 'absent'},
    (StepKind.SERVICE_STATE, 'state'): {'started', 'stopped'},
    (StepKind.USER_ACCOUNT, 'state'): {'present', 'absent'},
    (StepKind.FILE_STATE, 'state'): {'directory', 'file', 'absent'},
    (StepKind.CONTAINER_RUN, 'state'): {'started', 'stopped', 'absent'},
    (StepKind.CONTAINER_RUN, 'restart_policy'): {'no', 'always', 'unless-stopped', 'on-failure'},
    (StepKind.FIREWALL_RULE, 'proto'): {'tcp', 'udp'},
    (StepKind.FIREWALL_RULE, 'rule'): {'allow', 'deny', 'reject', 'limit'},
}

# Parameters rendered at apply time rather than load time
_DEFERRED: dict[StepKind, set[str]] = {
    StepKind.TEMPLATED_FILE: {'content'},
}

_STEP_KEYS = {'name', 'tags', 'best_effort'}

CHECKSUM_ALGORITHMS = {
    'sha256': 64, 'sha384': 96, 'sha512': 128, 'sha1': 40, 'md5': 32,
}

_CHECKSUM_RE = re.compile(r'^([a-z0-9]+):([0-9a-f]+)$', re.I)


def _jinja_env() -> Environment:
    return Environment(undefined=StrictUndefined, keep_trailing_newline=True, autoescape=False)


def _render(value: Any, env: Environment, variables: dict) -> Any:
    """Render Jinja2 expressions in strings, recursing into lists and dicts."""
    if isinstance(value, str):
        if '{{' not in value and '{%' not in value:
            return value
        return env.from_string(value).render(**variables)
    if isinstance(value, list):
        return [_render(v, env, variables) for v in value]
    if isinstance(value, dict):
        return {k: _render(v, env, variables) for k, v in value.items()}
    return value


def _render_vars(raw_vars: dict, env: Environment) -> dict:
    """Render vars in declaration order; each may reference earlier ones."""
    rendered: dict = {}
    for key, value in raw_vars.items():
        try:
            rendered[key] = _render(value, env, rendered)
        except TemplateError as e:
            raise ConfigError(f"vars.{key}: {e}") from e
    return rendered


def parse_mode(value: Any) -> Optional[int]:
    """Parse a file mode. Strings are octal ('0755'); ints are taken as-is."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"Invalid mode: {value!r}")
    if isinstance(value, int):
        mode = value
    else:
        try:
            mode = int(str(value), 8)
        except ValueError as e:
            raise ConfigError(f"Invalid mode: {value!r} (expected octal string like '0644')") from e
    if not 0 <= mode <= 0o7777:
        raise ConfigError(f"Invalid mode: {value!r}")
    return mode


def parse_checksum(value: str) -> tuple[str, str]:
    """Split 'algo:hexdigest' and validate both parts."""
    match = _CHECKSUM_RE.match(str(value).strip())
    if not match:
        raise ConfigError(f"Invalid checksum {value!r}: expected '<algorithm>:<hexdigest>'")
    algo, digest = match.group(1).lower(), match.group(2).lower()
    if algo not in CHECKSUM_ALGORITHMS:
        raise ConfigError(
            f"Unsupported checksum algorithm '{algo}'. "
            f"Supported: {', '.join(sorted(CHECKSUM_ALGORITHMS))}"
        )
    if len(digest) != CHECKSUM_ALGORITHMS[algo]:
        raise ConfigError(f"Checksum for {algo} must be {CHECKSUM_ALGORITHMS[algo]} hex characters")
    return algo, digest


def _identity(kind: StepKind, params: dict) -> str:
    if kind == StepKind.PACKAGE:
        return params['name'] or 'apt-cache'
    if kind in (StepKind.FILE_STATE, StepKind.GENERATED_SECRET):
        return params['path']
    if kind in (StepKind.ARCHIVE_EXTRACT, StepKind.TEMPLATED_FILE):
        return params['dest']
    if kind == StepKind.FIREWALL_RULE:
        return f"{params['port']}/{params['proto']}"
    return params['name']


_INT_PARAMS = ('strip_components', 'bytes', 'cache_valid_time', 'timeout')


def _coerce_ints(params: dict, where: str) -> None:
    for key in _INT_PARAMS:
        if key not in params:
            continue
        value = params[key]
        if isinstance(value, bool):
            raise ConfigError(f"{where}: {key} must be an integer, got {value!r}")
        try:
            params[key] = int(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{where}: {key} must be an integer, got {value!r}") from e


def _check_kind_params(kind: StepKind, params: dict, where: str) -> None:
    """Kind-specific validation beyond required/choices."""
    if kind == StepKind.PACKAGE:
        if not params['name'] and not params['update_cache']:
            raise ConfigError(f"{where}: package needs 'name' or 'update_cache: true'")

    elif kind == StepKind.ARCHIVE_EXTRACT:
        if bool(params['url']) == bool(params['src']):
            raise ConfigError(f"{where}: archive needs exactly one of 'url' or 'src'")
        if params['url'] and not params['checksum']:
            raise ConfigError(
                f"{where}: archive from url requires 'checksum' (e.g. sha256:<hex>)"
            )
        if params['checksum']:
            parse_checksum(params['checksum'])
        if params['strip_components'] < 0:
            raise ConfigError(f"{where}: strip_components must be >= 0")

    elif kind == StepKind.TEMPLATED_FILE:
        if (params['src'] is None) == (params['content'] is None):
            raise ConfigError(f"{where}: template needs exactly one of 'src' or 'content'")
        if params['validate'] and '%s' not in params['validate']:
            raise ConfigError(f"{where}: validate command must contain '%s'")

    elif kind == StepKind.GENERATED_SECRET:
        if params['bytes'] < 16:
            raise ConfigError(f"{where}: secret bytes must be at least 16")

    elif kind == StepKind.CONTAINER_RUN:
        if not isinstance(params['ports'], list) or not isinstance(params['volumes'], list):
            raise ConfigError(f"{where}: container ports and volumes must be lists")
        if not isinstance(params['env'], dict):
            raise ConfigError(f"{where}: container env must be a mapping")

    elif kind == StepKind.USER_ACCOUNT:
        if not isinstance(params['groups'], list):
            raise ConfigError(f"{where}: user groups must be a list")


def _normalize(kind: StepKind, params: dict, base_dir: Optional[Path]) -> dict:
    """Coerce parameter types after validation."""
    if 'mode' in params:
        params['mode'] = parse_mode(params['mode'])
    if kind == StepKind.CONTAINER_RUN:
        params['ports'] = [str(p) for p in params['ports']]
        params['volumes'] = [str(v) for v in params['volumes']]
        params['env'] = {str(k): str(v) for k, v in params['env'].items()}
    if kind == StepKind.FIREWALL_RULE:
        params['port'] = str(params['port'])
    if kind == StepKind.USER_ACCOUNT:
        params['groups'] = [str(g) for g in params['groups']]
    src = params.get('src')
    if base_dir is not None and src and not Path(src).is_absolute():
        params['src'] = str(base_dir / src)
    return params


def parse_step(raw: Any, index: int, variables: dict,
               base_dir: Optional[Path] = None) -> Step:
    """Build a Step from one entry of the playbook's steps list."""
    where = f"steps[{index}]"
    if not isinstance(raw, dict):
        raise ConfigError(f"{where}: expected a mapping")

    kind_keys = [k for k in raw if k not in _STEP_KEYS]
    known = [k for k in kind_keys if k in {m.value for m in StepKind}]
    unknown = [k for k in kind_keys if k not in known]
    if unknown:
        raise ConfigError(f"{where}: unknown key(s): {', '.join(sorted(unknown))}")
    if len(known) != 1:
        raise ConfigError(
            f"{where}: expected exactly one kind key, got {known or 'none'}. "
            f"Kinds: {', '.join(m.value for m in StepKind)}"
        )

    kind = StepKind(known[0])
    if raw.get('name'):
        where = f"{where} ({raw['name']})"
    given = raw[kind.value] or {}
    if not isinstance(given, dict):
        raise ConfigError(f"{where}: '{kind.value}' parameters must be a mapping")

    if kind == StepKind.USER_ACCOUNT and 'password' in given:
        raise ConfigError(
            f"{where}: literal passwords are not accepted; "
            f"reference a secret with 'password_secret'"
        )

    schema = _PARAMS[kind]
    extra = set(given) - set(schema)
    if extra:
        raise ConfigError(
            f"{where}: unknown {kind.value} parameter(s): {', '.join(sorted(extra))}"
        )

    env = _jinja_env()
    deferred = _DEFERRED.get(kind, set())
    params: dict[str, Any] = {}
    for key, default in schema.items():
        if key in given and given[key] is not None:
            value = given[key]
            if key not in deferred:
                try:
                    value = _render(value, env, variables)
                except TemplateError as e:
                    raise ConfigError(f"{where}: {key}: {e}") from e
            params[key] = value
        elif default is _REQUIRED:
            raise ConfigError(f"{where}: {kind.value} requires '{key}'")
        else:
            params[key] = list(default) if isinstance(default, list) else (
                dict(default) if isinstance(default, dict) else default)

    for (choice_kind, key), allowed in _CHOICES.items():
        if choice_kind == kind and params.get(key) not in allowed:
            raise ConfigError(
                f"{where}: {key} must be one of {', '.join(sorted(allowed))}, "
                f"got {params.get(key)!r}"
            )

    _coerce_ints(params, where)
    _check_kind_params(kind, params, where)
    params = _normalize(kind, params, base_dir)

    tags = raw.get('tags') or []
    if isinstance(tags, str):
        tags = [t.strip() for t in tags.split(',') if t.strip()]

    return Step(
        kind=kind,
        identity=str(_identity(kind, params)),
        params=params,
        tags=frozenset(str(t) for t in tags),
        name=str(raw.get('name') or ''),
        best_effort=bool(raw.get('best_effort', False)),
        index=index,
    )


def container_public_roots(steps: Iterable[Step]) -> list[Path]:
    """Host directories mounted into containers; anything under them is public."""
    roots = []
    for step in steps:
        if step.kind != StepKind.CONTAINER_RUN:
            continue
        for volume in step.params['volumes']:
            host_part = volume.split(':', 1)[0]
            if host_part.startswith('/'):
                roots.append(Path(host_part))
    return roots


def parse_playbook(data: dict, name: str = 'playbook',
                   base_dir: Optional[Path] = None) -> Playbook:
    """Build a Playbook from an already-parsed document."""
    env = _jinja_env()
    raw_vars = data.get('vars') or {}
    if not isinstance(raw_vars, dict):
        raise ConfigError("vars must be a mapping")
    variables = _render_vars(raw_vars, env)

    raw_steps = data.get('steps')
    if not isinstance(raw_steps, list) or not raw_steps:
        raise ConfigError("playbook needs a non-empty 'steps' list")

    steps = [parse_step(raw, i, variables, base_dir) for i, raw in enumerate(raw_steps)]

    settings = data.get('settings') or {}
    if not isinstance(settings, dict):
        raise ConfigError("settings must be a mapping")
    declared = settings.get('public_roots') or []
    if not isinstance(declared, list):
        raise ConfigError("settings.public_roots must be a list of paths")
    try:
        declared = _render(declared, env, variables)
    except TemplateError as e:
        raise ConfigError(f"settings.public_roots: {e}") from e
    roots: list[Path] = [Path(r) for r in declared]
    for root in container_public_roots(steps):
        if root not in roots:
            roots.append(root)

    return Playbook(
        name=str(data.get('name') or name),
        steps=steps,
        vars=variables,
        public_roots=tuple(roots),
        path=None,
    )


def load_playbook(path: Path) -> Playbook:
    """Load and validate a playbook file."""
    path = Path(path)
    data = parse_yaml(path)
    playbook = parse_playbook(data, name=path.stem, base_dir=path.parent.resolve())
    playbook.path = path
    logger.debug(f"Loaded playbook '{playbook.name}' with {len(playbook.steps)} steps")
    return playbook


def step_matches(step: Step, tags: Optional[set[str]] = None,
                 skip_tags: Optional[set[str]] = None) -> bool:
    """Selector predicate: tag intersection, then skip-tag exclusion."""
    if tags and not step.tags & set(tags):
        return False
    if skip_tags and step.tags & set(skip_tags):
        return False
    return True


def select_steps(steps: Iterable[Step], tags: Optional[set[str]] = None,
                 skip_tags: Optional[set[str]] = None) -> list[Step]:
    """Filter steps by selector, keeping their original relative order."""
    return [s for s in steps if step_matches(s, tags, skip_tags)]

