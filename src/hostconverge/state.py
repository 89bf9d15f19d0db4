"""Per-step execution state for a provisioning run.

Each step walks Pending -> Resolved -> {Unchanged, Applying -> Applied,
Applying -> Failed}. A step that cannot even be resolved goes straight
from Pending to Failed. In check mode a differing step ends in
WouldChange instead of Applying.

The run-level state is persisted to <state_dir>/last-run.json after each
run so operators can see where an aborted run stopped.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

LAST_RUN_FILE = 'last-run.json'


class StepStatus(str, Enum):
    PENDING = 'pending'
    RESOLVED = 'resolved'
    UNCHANGED = 'unchanged'
    APPLYING = 'applying'
    APPLIED = 'applied'
    FAILED = 'failed'
    WOULD_CHANGE = 'would_change'


TERMINAL_STATUSES = frozenset({
    StepStatus.UNCHANGED,
    StepStatus.APPLIED,
    StepStatus.FAILED,
    StepStatus.WOULD_CHANGE,
})

_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.RESOLVED, StepStatus.FAILED}),
    StepStatus.RESOLVED: frozenset({
        StepStatus.UNCHANGED, StepStatus.APPLYING,
        StepStatus.WOULD_CHANGE, StepStatus.FAILED,
    }),
    StepStatus.APPLYING: frozenset({StepStatus.APPLIED, StepStatus.FAILED}),
}


class InvalidTransitionError(RuntimeError):
    """Step state machine violated."""


@dataclass
class StepState:
    """Execution state of a single step.

    Attributes:
        label: Display label of the step
        kind: Step kind value (e.g. 'package')
        identity: Resource identity (name or path)
        status: Current status
        started_at: Timestamp when resolution started
        completed_at: Timestamp when a terminal status was reached
        error: Error kind value if failed
        message: Failure message (already redacted)
    """
    label: str
    kind: str
    identity: str
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None
    message: str = ''

    def _transition(self, new: StepStatus) -> None:
        allowed = _TRANSITIONS.get(self.status, frozenset())
        if new not in allowed:
            raise InvalidTransitionError(
                f"[{self.label}] cannot move from {self.status.value} to {new.value}"
            )
        self.status = new
        if new in TERMINAL_STATUSES:
            self.completed_at = time.time()

    def resolve(self) -> None:
        self.started_at = self.started_at or time.time()
        self._transition(StepStatus.RESOLVED)

    def unchanged(self) -> None:
        self._transition(StepStatus.UNCHANGED)

    def would_change(self) -> None:
        self._transition(StepStatus.WOULD_CHANGE)

    def begin_apply(self) -> None:
        self._transition(StepStatus.APPLYING)

    def applied(self) -> None:
        self._transition(StepStatus.APPLIED)

    def fail(self, error: str, message: str) -> None:
        self.started_at = self.started_at or time.time()
        self._transition(StepStatus.FAILED)
        self.error = error
        self.message = message

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration(self) -> float:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return 0.0

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'label': self.label,
            'kind': self.kind,
            'identity': self.identity,
            'status': self.status.value,
        }
        if self.started_at is not None:
            d['started_at'] = self.started_at
        if self.completed_at is not None:
            d['completed_at'] = self.completed_at
        if self.error is not None:
            d['error'] = self.error
            d['message'] = self.message
        return d


class RunState:
    """Run-level state: every selected step's StepState, in order."""

    def __init__(self, playbook: str):
        self.playbook = playbook
        self._steps: list[StepState] = []
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None

    def add_step(self, label: str, kind: str, identity: str) -> StepState:
        state = StepState(label=label, kind=kind, identity=identity)
        self._steps.append(state)
        return state

    @property
    def steps(self) -> list[StepState]:
        return list(self._steps)

    def start(self) -> None:
        self.started_at = time.time()

    def finish(self) -> None:
        self.completed_at = time.time()

    def to_dict(self) -> dict:
        return {
            'playbook': self.playbook,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'steps': [s.to_dict() for s in self._steps],
        }

    def save(self, state_dir: Path) -> Path:
        """Write state to <state_dir>/last-run.json."""
        state_dir.mkdir(parents=True, exist_ok=True)
        path = state_dir / LAST_RUN_FILE
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.debug(f"Saved run state to {path}")
        return path

    @classmethod
    def load(cls, state_dir: Path) -> Optional['RunState']:
        """Load the last saved run state, or None if there is none."""
        path = state_dir / LAST_RUN_FILE
        if not path.exists():
            return None
        with open(path, encoding='utf-8') as f:
            data = json.load(f)
        state = cls(data.get('playbook', ''))
        state.started_at = data.get('started_at')
        state.completed_at = data.get('completed_at')
        for entry in data.get('steps', []):
            state._steps.append(StepState(
                label=entry['label'],
                kind=entry['kind'],
                identity=entry['identity'],
                status=StepStatus(entry.get('status', 'pending')),
                started_at=entry.get('started_at'),
                completed_at=entry.get('completed_at'),
                error=entry.get('error'),
                message=entry.get('message', ''),
            ))
        return state
