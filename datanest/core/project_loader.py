"""Load a ``Project`` from ``datanest.toml``."""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from datanest.core.errors import ConfigurationError
from datanest.models.project import Project
from datanest.models.steps import StepDefinition

logger = logging.getLogger(__name__)

PROJECT_FILENAME = "datanest.toml"


def find_project_file(path: Path) -> Path:
    """Accept a project directory or a project file and return the file."""
    path = Path(path)
    candidate = path / PROJECT_FILENAME if path.is_dir() else path
    if not candidate.is_file():
        raise ConfigurationError(f"No project file at {candidate}")
    return candidate


def load_project(path: Path) -> Project:
    """Parse a project file; the project root is the file's directory.

    Raises ``ConfigurationError`` for unreadable TOML or invalid steps.
    """
    project_file = find_project_file(path).resolve()
    try:
        document = tomllib.loads(project_file.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"{project_file}: invalid TOML: {exc}") from exc
    return project_from_dict(document, root=project_file.parent)


def project_from_dict(document: dict[str, Any], *, root: Path) -> Project:
    """Build a ``Project`` from a parsed project document."""
    header = document.get("project", {})
    if not isinstance(header, dict):
        raise ConfigurationError("[project] must be a table")

    raw_steps = document.get("steps", [])
    if not isinstance(raw_steps, list):
        raise ConfigurationError("[[steps]] must be an array of tables")

    steps: list[StepDefinition] = []
    for index, raw in enumerate(raw_steps):
        try:
            steps.append(StepDefinition.model_validate(raw))
        except ValidationError as exc:
            label = raw.get("name", f"#{index + 1}") if isinstance(raw, dict) else f"#{index + 1}"
            raise ConfigurationError(f"Invalid step {label}: {exc}") from exc

    data_root = header.get("data_root")
    try:
        project = Project(
            name=header.get("name") or root.name,
            root=root,
            steps=steps,
            data_root=Path(data_root) if data_root else None,
        )
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid project definition: {exc}") from exc

    logger.debug("Loaded project %s with %d step(s)", project.name, len(steps))
    return project
