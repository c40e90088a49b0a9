"""Tests for loading projects from datanest.toml."""

from __future__ import annotations

from pathlib import Path

import pytest

from datanest.core.errors import ConfigurationError
from datanest.core.project_loader import PROJECT_FILENAME, find_project_file, load_project
from datanest.models.steps import StepKind


class TestLoadProject:
    def test_loads_default_project(self, make_project):
        root = make_project()
        project = load_project(root)
        assert project.name == "demo"
        assert project.root == root.resolve()
        assert project.step_names == ["raw", "clean", "report_data"]
        assert project.get_step("clean").kind == StepKind.TRANSFORM
        assert project.get_step("clean").depends_on == ["raw"]

    def test_accepts_the_file_itself(self, make_project):
        root = make_project()
        assert load_project(root / PROJECT_FILENAME).root == root.resolve()

    def test_data_root_defaults_under_project(self, make_project):
        project = load_project(make_project())
        assert project.resolved_data_root == project.root / ".datanest"

    def test_name_defaults_to_directory(self, tmp_dir):
        root = tmp_dir / "quarterly"
        root.mkdir()
        (root / PROJECT_FILENAME).write_text(
            '[[steps]]\nname = "raw"\nkind = "fetch"\nsource = "a.csv"\n'
        )
        assert load_project(root).name == "quarterly"

    def test_custom_data_root(self, tmp_dir):
        (tmp_dir / PROJECT_FILENAME).write_text('[project]\ndata_root = "store"\n')
        project = load_project(tmp_dir)
        assert project.resolved_data_root == tmp_dir.resolve() / "store"

    def test_expectations_parsed(self, make_project):
        root = make_project(
            [
                {"name": "raw", "kind": "fetch", "source": "data/raw.csv"},
                {
                    "name": "clean",
                    "kind": "transform",
                    "script": "scripts/clean.py",
                    "depends_on": ["raw"],
                    "expect": {"format": "csv", "columns": ["ID"], "min_rows": 1},
                    "timeout": 5.0,
                },
            ]
        )
        step = load_project(root).get_step("clean")
        assert step.expect.columns == ["ID"]
        assert step.timeout == 5.0


class TestLoadProjectErrors:
    def test_missing_file(self, tmp_dir):
        with pytest.raises(ConfigurationError, match="No project file"):
            find_project_file(tmp_dir / "nowhere")

    def test_invalid_toml(self, tmp_dir):
        (tmp_dir / PROJECT_FILENAME).write_text("[[steps]\n")
        with pytest.raises(ConfigurationError, match="invalid TOML"):
            load_project(tmp_dir)

    def test_unknown_field(self, make_project):
        root = make_project([{"name": "raw", "kind": "fetch", "source": "a", "colour": "red"}])
        with pytest.raises(ConfigurationError, match="Invalid step raw"):
            load_project(root)

    def test_unknown_kind(self, make_project):
        root = make_project([{"name": "raw", "kind": "download", "source": "a"}])
        with pytest.raises(ConfigurationError):
            load_project(root)

    def test_steps_must_be_array(self, tmp_dir: Path):
        (tmp_dir / PROJECT_FILENAME).write_text('steps = "raw"\n')
        with pytest.raises(ConfigurationError, match="array of tables"):
            load_project(tmp_dir)
