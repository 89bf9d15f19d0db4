"""Container adapter (docker CLI).

A container is recreated when its image or its run configuration changes.
The configuration is summarized as a digest stored in a container label,
so a converged container is detected without diffing docker's own
normalized view of ports, mounts and environment.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from hostconverge.actions.base import Adapter
from hostconverge.common import file_digest
from hostconverge.errors import ResourceUnavailableError, command_error
from hostconverge.playbook import Step, StepKind

logger = logging.getLogger(__name__)

DIGEST_LABEL = 'io.hostconverge.config-digest'


@dataclass
class ContainerStatus:
    exists: bool
    running: bool = False
    image: Optional[str] = None
    config_digest: Optional[str] = None


def config_digest(params: dict) -> str:
    """Digest of everything that requires recreating the container."""
    env_file_digest = None
    if params['env_file']:
        env_file = Path(params['env_file'])
        if not env_file.is_file():
            raise ResourceUnavailableError(f"Container env_file {env_file} not found")
        env_file_digest = file_digest(env_file)

    payload = {
        'image': params['image'],
        'ports': sorted(params['ports']),
        'volumes': sorted(params['volumes']),
        'env': params['env'],
        'env_file': env_file_digest,
        'restart_policy': params['restart_policy'],
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()


class ContainerAdapter(Adapter):
    """Ensure a named container runs a given image with a given configuration."""

    kind = StepKind.CONTAINER_RUN

    def resolve(self, step: Step) -> ContainerStatus:
        name = step.params['name']
        cmd = ['docker', 'inspect', '--type', 'container', name]
        rc, out, err = self.run(cmd)
        if rc != 0:
            if 'no such' in err.lower():
                return ContainerStatus(exists=False)
            raise command_error(cmd, rc, err)

        info = json.loads(out)[0]
        config = info.get('Config') or {}
        labels = config.get('Labels') or {}
        return ContainerStatus(
            exists=True,
            running=bool((info.get('State') or {}).get('Running')),
            image=config.get('Image'),
            config_digest=labels.get(DIGEST_LABEL),
        )

    def _needs_recreate(self, step: Step, observed: ContainerStatus) -> bool:
        p = step.params
        return observed.image != p['image'] or observed.config_digest != config_digest(p)

    def matches(self, step: Step, observed: ContainerStatus) -> bool:
        p = step.params
        if p['state'] == 'absent':
            return not observed.exists
        if not observed.exists or self._needs_recreate(step, observed):
            return False
        return observed.running == (p['state'] == 'started')

    def apply(self, step: Step, observed: ContainerStatus) -> None:
        p = step.params
        name = p['name']

        if p['state'] == 'absent':
            logger.info(f"[{step.label}] Removing container {name}")
            self.check(['docker', 'rm', '-f', name])
            return

        if observed.exists and self._needs_recreate(step, observed):
            logger.info(f"[{step.label}] Configuration of {name} changed, recreating")
            self.check(['docker', 'rm', '-f', name])
            observed = ContainerStatus(exists=False)

        if not observed.exists:
            self._create(step)
            return

        if p['state'] == 'started' and not observed.running:
            logger.info(f"[{step.label}] Starting container {name}")
            self.check(['docker', 'start', name])
        elif p['state'] == 'stopped' and observed.running:
            logger.info(f"[{step.label}] Stopping container {name}")
            self.check(['docker', 'stop', name])

    def _create(self, step: Step) -> None:
        p = step.params
        verb = ['run', '-d'] if p['state'] == 'started' else ['create']
        cmd = ['docker', *verb,
               '--name', p['name'],
               '--restart', p['restart_policy'],
               '--label', f"{DIGEST_LABEL}={config_digest(p)}"]
        for port in p['ports']:
            cmd += ['-p', port]
        for volume in p['volumes']:
            cmd += ['-v', volume]
        for key, value in p['env'].items():
            cmd += ['-e', f"{key}={value}"]
        if p['env_file']:
            cmd += ['--env-file', p['env_file']]
        cmd.append(p['image'])

        logger.info(f"[{step.label}] Creating container {p['name']} from {p['image']}")
        self.check(cmd)
