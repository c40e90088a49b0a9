"""Step definition and step state models (per-run state machine)."""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class StepKind(str, Enum):
    """The three kinds of pipeline work."""

    FETCH = "fetch"
    TRANSFORM = "transform"
    PACKAGE = "package"


class StepState(str, Enum):
    """Strict state model for each step within one run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"
    BLOCKED = "blocked"


# Valid state transitions, enforced by StepTracker.
# A cache hit goes straight from PENDING to SKIPPED without RUNNING.
VALID_TRANSITIONS: dict[StepState, set[StepState]] = {
    StepState.PENDING: {StepState.RUNNING, StepState.SKIPPED, StepState.BLOCKED},
    StepState.RUNNING: {StepState.SUCCESS, StepState.FAILED},
    StepState.SUCCESS: set(),  # terminal
    StepState.SKIPPED: set(),  # terminal
    StepState.FAILED: set(),  # terminal
    StepState.BLOCKED: set(),  # terminal
}

TERMINAL_STATES: frozenset[StepState] = frozenset(
    state for state, targets in VALID_TRANSITIONS.items() if not targets
)

# States whose output may be consumed downstream.
COMPLETED_STATES: frozenset[StepState] = frozenset(
    {StepState.SUCCESS, StepState.SKIPPED}
)


class OutputExpectation(BaseModel):
    """Declared shape check applied to a transform's output."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    format: Literal["csv", "json"] | None = None
    min_bytes: int = 0
    columns: list[str] = []  # csv header must contain these
    min_rows: int = 0  # csv data rows or json array length


class StepDefinition(BaseModel):
    """A unit of pipeline work.

    ``depends_on`` encodes the DAG; its order is also the order in which
    upstream outputs are handed to a script.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    kind: StepKind
    script: str | None = None  # relative to the project root
    command: list[str] | None = None  # interpreter argv, defaults by suffix
    depends_on: list[str] = []
    output: str | None = None  # output name; artifact name for package steps

    # fetch steps
    source: str | None = None
    checksum: str | None = None  # "<algo>:<hex>" or bare sha256 hex
    revalidate: bool = False  # re-download each run, key on fetched digest

    # transform / package steps
    expect: OutputExpectation | None = None

    # package steps
    version: int | None = Field(default=None, ge=1)
    override: bool = False

    timeout: float | None = Field(default=None, gt=0)  # seconds

    @property
    def output_name(self) -> str:
        """The declared output name, defaulting to the step name."""
        return self.output or self.name
