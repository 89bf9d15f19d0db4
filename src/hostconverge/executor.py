"""Provisioning executor.

Walks the selected steps strictly in order. For each step the kind's
adapter resolves the current state, compares it with the desired state,
and applies the minimal change when they differ. The first failure of a
step that is not best-effort aborts the run; there is no rollback and no
retry within a run.
"""

import logging
import time
from pathlib import Path
from typing import Iterable, Optional

from hostconverge.actions import Adapter, RunContext, build_adapters
from hostconverge.common import ExecutionResult, Run
from hostconverge.errors import ErrorKind, StepError, classify_error
from hostconverge.playbook import Step, StepKind, select_steps
from hostconverge.state import InvalidTransitionError, RunState, StepState

logger = logging.getLogger(__name__)


class Executor:
    """Runs an ordered list of steps against the local host.

    Attributes:
        context: Shared run context handed to every adapter
        check_mode: If True, resolve and compare but never apply
        adapters: Adapter per step kind
        state_dir: Where last-run.json is written (None disables it)
    """

    def __init__(
        self,
        context: RunContext,
        check_mode: bool = False,
        adapters: Optional[dict[StepKind, Adapter]] = None,
        state_dir: Optional[Path] = None,
    ):
        self.context = context
        self.check_mode = check_mode
        self.adapters = adapters if adapters is not None else build_adapters(context)
        self.state_dir = state_dir
        self.state: Optional[RunState] = None

    def run(
        self,
        steps: Iterable[Step],
        selector: Optional[set[str]] = None,
        skip_tags: Optional[set[str]] = None,
        playbook_name: str = 'playbook',
    ) -> Run:
        """Converge the host to the selected steps and return the Run."""
        selected = select_steps(steps, selector, skip_tags)
        mode = ' (check mode)' if self.check_mode else ''
        logger.info(f"Running {len(selected)} step(s) from '{playbook_name}'{mode}")

        state = RunState(playbook_name)
        self.state = state
        step_states = [state.add_step(s.label, s.kind.value, s.identity) for s in selected]
        state.start()

        results: list[ExecutionResult] = []
        aborted = False
        for step, step_state in zip(selected, step_states):
            result = self._execute(step, step_state)
            results.append(result)
            if result.fatal:
                logger.error(f"Aborting run at step {step.index + 1} ({step.label})")
                aborted = True
                break

        state.finish()
        if self.state_dir is not None:
            state.save(self.state_dir)

        run = Run(results=tuple(results), aborted=aborted, check_mode=self.check_mode)
        logger.info(f"Recap: {run.recap()}")
        return run

    def _execute(self, step: Step, step_state: StepState) -> ExecutionResult:
        """Resolve, compare and apply one step; never raises StepError."""
        start = time.time()
        adapter = self.adapters.get(step.kind)
        logger.info(f"[{step.label}] Checking {step.kind.value} {step.identity}")

        try:
            if adapter is None:
                raise StepError(f"No adapter for step kind '{step.kind.value}'")

            observed = adapter.resolve(step)
            step_state.resolve()

            if adapter.matches(step, observed):
                step_state.unchanged()
                logger.info(f"[{step.label}] ok")
                return self._result(step, step_state, False, start)

            if self.check_mode:
                adapter.plan(step, observed)
                step_state.would_change()
                logger.info(f"[{step.label}] would change")
                return self._result(step, step_state, True, start)

            step_state.begin_apply()
            adapter.apply(step, observed)
            step_state.applied()
            logger.info(f"[{step.label}] changed")
            return self._result(step, step_state, True, start)

        except InvalidTransitionError:
            raise
        except Exception as e:  # pylint: disable=broad-except
            kind = classify_error(e)
            detail = e.message if isinstance(e, StepError) else str(e)
            message = self.context.secrets.redact(f"{step.identity}: {detail}")
            step_state.fail(kind.value, message)

            if step.best_effort:
                logger.warning(f"[{step.label}] failed (best-effort, continuing): "
                               f"{kind.value}: {message}")
            else:
                logger.error(f"[{step.label}] failed: {kind.value}: {message}")
            if not isinstance(e, StepError):
                # Tracebacks are not logged; they may carry secret values
                logger.debug(f"[{step.label}] unexpected {type(e).__name__} classified as {kind.value}")
            return self._result(step, step_state, False, start, kind)

    @staticmethod
    def _result(step: Step, step_state: StepState, changed: bool, start: float,
                error: Optional[ErrorKind] = None) -> ExecutionResult:
        return ExecutionResult(
            step=step,
            changed=changed,
            status=step_state.status,
            error=error,
            message=step_state.message,
            duration=time.time() - start,
        )

