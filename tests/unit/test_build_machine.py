"""Tests for BuildStateMachine — transition table enforcement and history."""

from __future__ import annotations

import pytest

from ocirootfs.core.build_machine import BuildStateMachine
from ocirootfs.core.errors import BuildStateError, PrematureMaterialization
from ocirootfs.models.build import STAGED_STATES, VALID_TRANSITIONS, BuildState


class TestTransitions:
    def test_starts_uninitialized(self):
        machine = BuildStateMachine()
        assert machine.state == BuildState.UNINITIALIZED
        assert machine.history == []

    def test_happy_path(self):
        machine = BuildStateMachine()
        for state in (
            BuildState.REFERENCE_RESOLVED,
            BuildState.LAYERS_STAGED,
            BuildState.FILE_OVERLAYS_APPLIED,
            BuildState.MATERIALIZED,
        ):
            machine.transition(state)
        assert machine.state == BuildState.MATERIALIZED
        assert machine.is_terminal
        assert len(machine.history) == 4

    def test_overlays_are_optional(self):
        machine = BuildStateMachine()
        machine.transition(BuildState.REFERENCE_RESOLVED)
        machine.transition(BuildState.LAYERS_STAGED)
        machine.transition(BuildState.MATERIALIZED)
        assert machine.state == BuildState.MATERIALIZED

    def test_cannot_skip_staging(self):
        machine = BuildStateMachine()
        machine.transition(BuildState.REFERENCE_RESOLVED)
        with pytest.raises(BuildStateError, match="Cannot transition"):
            machine.transition(BuildState.MATERIALIZED)
        assert machine.state == BuildState.REFERENCE_RESOLVED

    @pytest.mark.parametrize("terminal", [BuildState.MATERIALIZED, BuildState.FAILED])
    def test_terminal_states_have_no_exits(self, terminal):
        assert VALID_TRANSITIONS[terminal] == set()

    def test_every_live_state_can_fail(self):
        for state, targets in VALID_TRANSITIONS.items():
            if targets:
                assert BuildState.FAILED in targets

    def test_history_records_detail(self):
        machine = BuildStateMachine()
        record = machine.transition(BuildState.REFERENCE_RESOLVED, "sha256:abc")
        assert record.from_state == BuildState.UNINITIALIZED
        assert machine.history[0].detail == "sha256:abc"

    def test_history_is_a_copy(self):
        machine = BuildStateMachine()
        machine.transition(BuildState.REFERENCE_RESOLVED)
        machine.history.clear()
        assert len(machine.history) == 1


class TestRequireAndFail:
    def test_require_passes(self):
        BuildStateMachine().require({BuildState.UNINITIALIZED}, "build()")

    def test_require_raises_custom_error(self):
        machine = BuildStateMachine()
        with pytest.raises(PrematureMaterialization, match="create\\(\\) requires"):
            machine.require(STAGED_STATES, "create()", PrematureMaterialization)

    def test_fail_from_live_state(self):
        machine = BuildStateMachine()
        machine.fail("boom")
        assert machine.state == BuildState.FAILED
        assert machine.history[-1].detail == "boom"

    def test_fail_after_terminal_is_noop(self):
        machine = BuildStateMachine()
        machine.fail("first")
        machine.fail("second")
        assert len(machine.history) == 1
