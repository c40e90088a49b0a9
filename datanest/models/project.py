"""Project configuration model."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict

from datanest.models.steps import StepDefinition

DEFAULT_DATA_DIR = Path(".datanest")


class Project(BaseModel):
    """A named pipeline configuration rooted at an explicit directory.

    Loaded from ``datanest.toml`` by ``datanest.core.project_loader``.
    Every relative path in the project (scripts, local sources, the data
    root) is resolved against ``root``, never against the working directory.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    root: Path
    steps: list[StepDefinition] = []
    data_root: Path | None = None  # registry + cache; defaults to root/.datanest

    @property
    def resolved_data_root(self) -> Path:
        """Absolute data root for this project's registry and cache."""
        data_root = self.data_root or DEFAULT_DATA_DIR
        if data_root.is_absolute():
            return data_root
        return self.root / data_root

    @property
    def step_names(self) -> list[str]:
        return [step.name for step in self.steps]

    def get_step(self, name: str) -> StepDefinition:
        """Return the step declared under ``name``."""
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)

    def with_step(self, step: StepDefinition) -> Project:
        """Return a copy with ``step`` added, replacing a same-named step."""
        steps = [s for s in self.steps if s.name != step.name]
        steps.append(step)
        return self.model_copy(update={"steps": steps})

    def without_step(self, name: str) -> Project:
        """Return a copy with the named step removed."""
        if name not in self.step_names:
            raise KeyError(name)
        return self.model_copy(
            update={"steps": [s for s in self.steps if s.name != name]}
        )
