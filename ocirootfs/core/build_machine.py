"""Deterministic build state machine.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- Operations run only from their designated source states
- Every transition recorded in the build history
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from ocirootfs.core.errors import BuildStateError
from ocirootfs.models.build import VALID_TRANSITIONS, BuildState, BuildTransition


class BuildStateMachine:
    """Tracks one build's state and records its transitions.

    Parameters
    ----------
    logger:
        Logger transitions are reported through.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._state = BuildState.UNINITIALIZED
        self._history: list[BuildTransition] = []
        self._logger = logger or logging.getLogger(__name__)

    @property
    def state(self) -> BuildState:
        return self._state

    @property
    def history(self) -> list[BuildTransition]:
        """A snapshot of all recorded transitions, oldest first."""
        return list(self._history)

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[self._state]

    def transition(self, target_state: BuildState, detail: str = "") -> BuildTransition:
        """Move to *target_state*, recording the transition.

        Raises ``BuildStateError`` if the table does not allow it.
        """
        allowed = VALID_TRANSITIONS.get(self._state, set())
        if target_state not in allowed:
            raise BuildStateError(
                f"Cannot transition build from {self._state.value} to {target_state.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )
        record = BuildTransition(
            from_state=self._state, to_state=target_state, detail=detail
        )
        self._history.append(record)
        self._state = target_state
        self._logger.debug(
            "Build state %s -> %s%s",
            record.from_state.value, record.to_state.value,
            f" ({detail})" if detail else "",
        )
        return record

    def require(
        self,
        states: Iterable[BuildState],
        operation: str,
        error: type[BuildStateError] = BuildStateError,
    ) -> None:
        """Raise *error* unless the current state is one of *states*."""
        states = set(states)
        if self._state not in states:
            raise error(
                f"{operation} requires state {' or '.join(sorted(s.value for s in states))}, "
                f"build is {self._state.value}"
            )

    def fail(self, detail: str = "") -> None:
        """Move to FAILED unless already terminal."""
        if not self.is_terminal:
            self.transition(BuildState.FAILED, detail)
