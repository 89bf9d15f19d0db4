"""Run reporting."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from hostconverge.common import ExecutionResult, Run
from hostconverge.state import StepStatus

STATUS_MARKERS = {
    StepStatus.UNCHANGED: '✅',
    StepStatus.APPLIED: '🔧',
    StepStatus.WOULD_CHANGE: '📝',
    StepStatus.FAILED: '❌',
}


@dataclass
class RunReport:
    """Collects a run's results and writes JSON and markdown reports."""
    playbook: str
    report_dir: Path
    host: str = ''
    run: Optional[Run] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    skipped: list[str] = field(default_factory=list)

    def start(self):
        """Mark run start."""
        self.started_at = datetime.now()

    def finish(self, run: Run, write: bool = True) -> list[Path]:
        """Record the run and write report files; returns the paths written."""
        self.finished_at = datetime.now()
        self.run = run
        if not write:
            return []
        self.report_dir.mkdir(parents=True, exist_ok=True)
        return [self._write_json(), self._write_markdown()]

    @property
    def success(self) -> bool:
        return self.run is not None and self.run.success

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    @staticmethod
    def _result_dict(r: ExecutionResult) -> dict:
        d = {
            'index': r.step.index,
            'name': r.step.label,
            'kind': r.step.kind.value,
            'identity': r.step.identity,
            'status': r.status.value,
            'changed': r.changed,
            'duration': round(r.duration, 2),
        }
        if r.step.best_effort:
            d['best_effort'] = True
        if r.error is not None:
            d['error'] = r.error.value
            d['message'] = r.message
        return d

    def to_dict(self) -> dict:
        """Return report as dictionary for JSON output."""
        run = self.run or Run()
        result = {
            'playbook': self.playbook,
            'host': self.host,
            'success': self.success,
            'check_mode': run.check_mode,
            'aborted': run.aborted,
            'exit_code': run.exit_code,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration_seconds': round(self.duration, 1),
            'recap': {
                'ok': run.ok_count,
                'changed': run.changed_count,
                'failed': run.failed_count,
            },
            'steps': [self._result_dict(r) for r in run.results],
        }
        if self.skipped:
            result['not_run'] = list(self.skipped)

        # First fatal failure is the reason the run stopped
        for r in run.fatal_failures:
            result['error'] = f"{r.error.value}: {r.message}"
            break

        return result

    def _write_json(self) -> Path:
        filename = self._report_filename('json')
        with open(filename, 'w', encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        return filename

    def _write_markdown(self) -> Path:
        run = self.run or Run()
        status = 'PASSED' if self.success else 'FAILED'
        if run.check_mode:
            status += ' (check mode)'

        lines = [
            f"# {self.playbook}",
            "",
            f"**Host**: {self.host}",
            f"**Status**: {status}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
            f"**Recap**: {run.recap()}",
            "",
            "## Steps",
            "",
            "| # | Step | Status | Duration | Message |",
            "|---|------|--------|----------|---------|",
        ]

        for r in run.results:
            marker = STATUS_MARKERS.get(r.status, '❓')
            note = ' (best-effort)' if r.step.best_effort and r.failed else ''
            message = f"{r.error.value}: {r.message}" if r.error else ''
            lines.append(
                f"| {r.step.index + 1} | {r.step.label} | {marker} {r.status.value}{note} "
                f"| {r.duration:.1f}s | {message} |"
            )

        if self.skipped:
            lines.extend(["", "## Not run", ""])
            lines.extend(f"- {label}" for label in self.skipped)

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename('md')
        with open(filename, 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))
        return filename

    def _report_filename(self, ext: str) -> Path:
        """Generate report filename; includes the playbook name to avoid collisions."""
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        status = 'passed' if self.success else 'failed'
        slug = self.playbook.replace('/', '-') if self.playbook else ''
        if slug:
            return self.report_dir / f"{timestamp}.{slug}.{status}.{ext}"
        return self.report_dir / f"{timestamp}.{status}.{ext}"
