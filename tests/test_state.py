"""Tests for hostconverge.state module."""

import json

import pytest

from hostconverge.state import (
    LAST_RUN_FILE,
    InvalidTransitionError,
    RunState,
    StepState,
    StepStatus,
)


def _state():
    return StepState(label='Install Docker', kind='package', identity='docker.io')


class TestStepState:
    """Tests for the per-step state machine."""

    def test_defaults(self):
        state = _state()
        assert state.status == StepStatus.PENDING
        assert state.started_at is None
        assert not state.terminal

    def test_unchanged_path(self):
        state = _state()
        state.resolve()
        state.unchanged()
        assert state.status == StepStatus.UNCHANGED
        assert state.terminal
        assert state.duration >= 0

    def test_apply_path(self):
        state = _state()
        state.resolve()
        state.begin_apply()
        assert not state.terminal
        state.applied()
        assert state.status == StepStatus.APPLIED
        assert state.completed_at is not None

    def test_apply_failure(self):
        state = _state()
        state.resolve()
        state.begin_apply()
        state.fail('NetworkFailure', 'apt-get failed')
        assert state.status == StepStatus.FAILED
        assert state.error == 'NetworkFailure'

    def test_resolve_failure_goes_straight_to_failed(self):
        state = _state()
        state.fail('ResourceUnavailable', 'unit not found')
        assert state.status == StepStatus.FAILED
        assert state.started_at is not None

    def test_check_mode_path(self):
        state = _state()
        state.resolve()
        state.would_change()
        assert state.status == StepStatus.WOULD_CHANGE
        assert state.terminal

    @pytest.mark.parametrize('moves', [
        ['applied'],
        ['begin_apply'],
        ['unchanged'],
        ['resolve', 'applied'],
        ['resolve', 'unchanged', 'begin_apply'],
        ['resolve', 'begin_apply', 'unchanged'],
        ['resolve', 'begin_apply', 'applied', 'applied'],
    ])
    def test_illegal_transitions_raise(self, moves):
        state = _state()
        with pytest.raises(InvalidTransitionError):
            for move in moves:
                getattr(state, move)()

    def test_terminal_state_cannot_fail(self):
        state = _state()
        state.resolve()
        state.unchanged()
        with pytest.raises(InvalidTransitionError):
            state.fail('ConflictingState', 'late failure')

    def test_to_dict(self):
        state = _state()
        state.fail('ResourceUnavailable', 'not found')
        d = state.to_dict()
        assert d['status'] == 'failed'
        assert d['error'] == 'ResourceUnavailable'
        assert d['message'] == 'not found'
        assert d['identity'] == 'docker.io'


class TestRunState:
    """Tests for RunState persistence."""

    def test_save_and_load(self, tmp_path):
        run = RunState('lab-deploy')
        run.start()
        first = run.add_step('Install Docker', 'package', 'docker.io')
        run.add_step('Start web', 'container', 'web')
        first.resolve()
        first.unchanged()
        run.finish()

        path = run.save(tmp_path)
        assert path == tmp_path / LAST_RUN_FILE
        data = json.loads(path.read_text())
        assert data['playbook'] == 'lab-deploy'
        assert [s['status'] for s in data['steps']] == ['unchanged', 'pending']

        loaded = RunState.load(tmp_path)
        assert loaded.playbook == 'lab-deploy'
        assert [s.status for s in loaded.steps] == [StepStatus.UNCHANGED, StepStatus.PENDING]

    def test_load_missing(self, tmp_path):
        assert RunState.load(tmp_path) is None

    def test_steps_returns_copy(self):
        run = RunState('x')
        run.add_step('a', 'file', '/a')
        run.steps.clear()
        assert len(run.steps) == 1
