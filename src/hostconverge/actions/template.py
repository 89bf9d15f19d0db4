"""Templated file adapter.

Renders a Jinja2 template (from ``src`` or inline ``content``) with the
playbook vars and a ``secrets`` mapping backed by the run's secret store.

Rendered output that contains any raw secret value is only written to a
non-public destination: its mode must grant nothing to "other" and it must
not sit under a public root (a declared web root, or any host directory
mounted into a container). Otherwise the step fails with PermissionDenied,
even when an identical file is already on disk.
"""

import logging
import os
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from jinja2 import Environment, StrictUndefined, TemplateError

from hostconverge.actions.base import (
    Adapter,
    apply_attributes,
    attributes_match,
    is_public_path,
)
from hostconverge.common import file_digest, text_digest
from hostconverge.errors import (
    ConflictingStateError,
    PermissionDeniedError,
    ResourceUnavailableError,
)
from hostconverge.playbook import Step, StepKind

logger = logging.getLogger(__name__)

DEFAULT_FILE_MODE = 0o644


@dataclass
class TemplateStatus:
    rendered: str
    st: Optional[os.stat_result] = None
    digest: Optional[str] = None


class TemplateAdapter(Adapter):
    """Render a template to a file and keep secrets off public paths."""

    kind = StepKind.TEMPLATED_FILE

    def _source(self, step: Step) -> str:
        p = step.params
        if p['content'] is not None:
            return str(p['content'])
        src = Path(p['src'])
        if not src.is_file():
            raise ResourceUnavailableError(f"Template source {src} not found")
        return src.read_text(encoding='utf-8')

    def render(self, step: Step) -> str:
        env = Environment(undefined=StrictUndefined, keep_trailing_newline=True, autoescape=False)
        try:
            template = env.from_string(self._source(step))
            return template.render(**self.context.vars, secrets=self.context.secrets.template_mapping())
        except TemplateError as e:
            raise ConflictingStateError(f"Cannot render template for {step.identity}: {e}") from e

    def _effective_mode(self, step: Step, st: Optional[os.stat_result]) -> int:
        if step.params['mode'] is not None:
            return step.params['mode']
        if st is not None:
            return stat.S_IMODE(st.st_mode)
        return DEFAULT_FILE_MODE

    def resolve(self, step: Step) -> TemplateStatus:
        dest = Path(step.params['dest'])
        rendered = self.render(step)

        try:
            st = os.lstat(dest)
        except FileNotFoundError:
            st = None
        if st is not None and not stat.S_ISREG(st.st_mode):
            raise ConflictingStateError(f"{dest} exists and is not a regular file")

        leaked = self.context.secrets.contained_in(rendered)
        mode = self._effective_mode(step, st)
        if leaked and is_public_path(dest, mode, self.context.public_roots):
            raise PermissionDeniedError(
                f"Refusing to write secret(s) {', '.join(leaked)} to {dest}: "
                f"destination is publicly readable (mode {mode:04o} or under a public root)"
            )

        digest = file_digest(dest) if st is not None else None
        return TemplateStatus(rendered=rendered, st=st, digest=digest)

    def matches(self, step: Step, observed: TemplateStatus) -> bool:
        p = step.params
        if observed.st is None:
            return False
        if observed.digest != text_digest(observed.rendered):
            return False
        return attributes_match(observed.st, p['owner'], p['group'], p['mode'])

    def apply(self, step: Step, observed: TemplateStatus) -> None:
        p = step.params
        dest = Path(p['dest'])

        if observed.st is not None and observed.digest == text_digest(observed.rendered):
            logger.info(f"[{step.label}] Fixing attributes on {dest}")
            apply_attributes(dest, p['owner'], p['group'], p['mode'])
            return

        if not dest.parent.is_dir():
            raise ResourceUnavailableError(f"Parent directory {dest.parent} does not exist")

        mode = self._effective_mode(step, observed.st)
        # mkstemp creates the file 0600, so content is never briefly exposed
        fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f'.{dest.name}.')
        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(observed.rendered)

            if p['validate']:
                cmd = [part.replace('%s', str(tmp)) for part in p['validate'].split()]
                rc, out, err = self.run(cmd)
                if rc != 0:
                    raise ConflictingStateError(
                        f"Validation failed for {dest}: {(err or out).strip()}"
                    )

            apply_attributes(tmp, p['owner'], p['group'], mode)
            os.replace(tmp, dest)
        finally:
            if tmp.exists():
                tmp.unlink()

        logger.info(f"[{step.label}] Wrote {dest}")
