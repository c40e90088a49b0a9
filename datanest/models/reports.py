"""Run report models — the single record of what happened in a run."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from datanest.models.steps import StepKind, StepState


class StepResult(BaseModel):
    """Final outcome of one step in a run."""

    model_config = ConfigDict(frozen=True)

    name: str
    kind: StepKind
    status: StepState
    cache_key: str = ""
    digest: str = ""  # output digest, for SUCCESS and SKIPPED
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_seconds: float = 0.0
    error_kind: str = ""
    error_message: str = ""
    artifact_name: str = ""
    artifact_version: int | None = None


class RunReport(BaseModel):
    """Every selected step's final status, in execution order."""

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(default_factory=lambda: f"run-{uuid.uuid4().hex[:12]}")
    project: str
    steps: list[StepResult] = []
    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    finished_at: datetime | None = None
    cancelled: bool = False

    def step(self, name: str) -> StepResult:
        for result in self.steps:
            if result.name == name:
                return result
        raise KeyError(name)

    @property
    def statuses(self) -> dict[str, StepState]:
        """Map of step name to final status."""
        return {result.name: result.status for result in self.steps}

    @property
    def failed_steps(self) -> list[StepResult]:
        return [r for r in self.steps if r.status == StepState.FAILED]

    @property
    def ok(self) -> bool:
        """True when no step failed or was blocked."""
        return all(
            r.status in (StepState.SUCCESS, StepState.SKIPPED) for r in self.steps
        )

    @property
    def artifacts(self) -> dict[str, int]:
        """Artifact name to version for every package step that produced one."""
        return {
            r.artifact_name: r.artifact_version
            for r in self.steps
            if r.artifact_version is not None
        }
