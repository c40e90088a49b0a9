"""Per-run step state machine.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- Upstream steps completed before a step runs or is skipped
- Cascade blocking of transitive dependents on failure

One tracker belongs to one run; worker threads report through it, so every
method takes the tracker lock.
"""

from __future__ import annotations

import logging
import threading

from datanest.core.errors import InvalidTransition
from datanest.core.step_graph import StepGraph
from datanest.models.steps import TERMINAL_STATES, VALID_TRANSITIONS, StepState

logger = logging.getLogger(__name__)


class StepTracker:
    """Tracks the state of every selected step in one run.

    Parameters
    ----------
    graph:
        The validated step graph.
    selected:
        Names of the steps taking part in this run.
    """

    def __init__(self, graph: StepGraph, selected: list[str]) -> None:
        self._graph = graph
        self._lock = threading.Lock()
        self._states: dict[str, StepState] = {name: StepState.PENDING for name in selected}

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    def state(self, name: str) -> StepState:
        with self._lock:
            return self._states[name]

    def snapshot(self) -> dict[str, StepState]:
        with self._lock:
            return dict(self._states)

    def ready(self) -> list[str]:
        """PENDING steps whose upstream steps have all completed."""
        with self._lock:
            return [
                name
                for name, state in self._states.items()
                if state == StepState.PENDING
                and self._graph.are_prerequisites_met(name, self._states)
            ]

    def pending(self) -> list[str]:
        with self._lock:
            return [n for n, s in self._states.items() if s == StepState.PENDING]

    @property
    def finished(self) -> bool:
        with self._lock:
            return all(s in TERMINAL_STATES for s in self._states.values())

    # ------------------------------------------------------------------
    # Transition logic
    # ------------------------------------------------------------------

    def transition(self, name: str, target: StepState) -> list[str]:
        """Move ``name`` to ``target``.

        Validates:
        1. The transition is allowed by VALID_TRANSITIONS.
        2. If target is RUNNING or SKIPPED, upstream steps have completed.
        3. If target is FAILED, transitive dependents are blocked.

        Returns the names of steps blocked as a consequence.
        """
        with self._lock:
            current = self._states[name]
            allowed = VALID_TRANSITIONS.get(current, set())
            if target not in allowed:
                raise InvalidTransition(
                    f"Cannot transition {name} from {current.value} to {target.value}. "
                    f"Allowed: {sorted(s.value for s in allowed)}"
                )

            if target in (StepState.RUNNING, StepState.SKIPPED):
                if not self._graph.are_prerequisites_met(name, self._states):
                    reasons = self._graph.get_blocking_reasons(name, self._states)
                    raise InvalidTransition(
                        f"Cannot start {name}: {'; '.join(reasons)}"
                    )

            self._states[name] = target
            logger.debug("Step %s: %s -> %s", name, current.value, target.value)

            blocked: list[str] = []
            if target == StepState.FAILED:
                blocked = self._graph.cascade_block(name, self._states)
                for blocked_name in blocked:
                    logger.info("Step %s blocked by failed upstream %s", blocked_name, name)
            return blocked

    def block_remaining(self) -> list[str]:
        """Block every step still PENDING (run cancelled)."""
        with self._lock:
            remaining = [n for n, s in self._states.items() if s == StepState.PENDING]
            for name in remaining:
                self._states[name] = StepState.BLOCKED
            return remaining
