"""Datanest data models — all Pydantic v2, all frozen (immutable)."""

from datanest.models.artifacts import ArtifactCandidate, ArtifactRecord, RegistryRecord
from datanest.models.cache import CacheEntry
from datanest.models.project import Project
from datanest.models.reports import RunReport, StepResult
from datanest.models.steps import (
    COMPLETED_STATES,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    OutputExpectation,
    StepDefinition,
    StepKind,
    StepState,
)

__all__ = [
    # steps
    "StepKind",
    "StepState",
    "StepDefinition",
    "OutputExpectation",
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "COMPLETED_STATES",
    # cache
    "CacheEntry",
    # artifacts
    "ArtifactCandidate",
    "ArtifactRecord",
    "RegistryRecord",
    # project
    "Project",
    # reports
    "StepResult",
    "RunReport",
]
