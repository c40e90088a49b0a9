"""Shared test fixtures for datanest."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from datanest.config import DatanestSettings
from datanest.core.cache_store import CacheStore
from datanest.core.loader import Loader
from datanest.core.orchestrator import Orchestrator
from datanest.core.project_loader import load_project
from datanest.core.registry import Registry

RAW_CSV = "id,name\n1,ada\n2,grace\n"

UPPER_SCRIPT = """\
import os
import sys

out_path, in_path = sys.argv[1], sys.argv[2]
with open(os.path.join(os.environ["DATANEST_PROJECT_ROOT"], "runs.log"), "a") as log:
    log.write("clean\\n")
with open(in_path) as src, open(out_path, "w") as out:
    out.write(src.read().upper())
"""

DEFAULT_STEPS: list[dict[str, Any]] = [
    {"name": "raw", "kind": "fetch", "source": "data/raw.csv"},
    {
        "name": "clean",
        "kind": "transform",
        "script": "scripts/clean.py",
        "depends_on": ["raw"],
    },
    {"name": "report_data", "kind": "package", "depends_on": ["clean"]},
]


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return json.dumps(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(v) for v in value) + "]"
    if isinstance(value, dict):
        return "{ " + ", ".join(f"{k} = {_toml_value(v)}" for k, v in value.items()) + " }"
    raise TypeError(f"Cannot render {value!r} as TOML")


def render_project_toml(name: str, steps: list[dict[str, Any]]) -> str:
    """Render a datanest.toml document from plain step dicts."""
    lines = ["[project]", f"name = {_toml_value(name)}", ""]
    for step in steps:
        lines.append("[[steps]]")
        lines.extend(f"{key} = {_toml_value(value)}" for key, value in step.items())
        lines.append("")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Storage fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def cache_store(tmp_dir: Path) -> CacheStore:
    """Provide a fresh CacheStore in a temp directory."""
    return CacheStore(tmp_dir / "cache")


@pytest.fixture
def registry(tmp_dir: Path) -> Registry:
    """Provide a fresh Registry backed by a temp SQLite database."""
    return Registry(tmp_dir / "registry.db")


@pytest.fixture
def loader(registry: Registry, cache_store: CacheStore) -> Loader:
    """Provide a Loader over the test registry and cache."""
    return Loader(registry, cache_store)


@pytest.fixture
def settings() -> DatanestSettings:
    """Settings with no retry backoff so failure tests stay fast."""
    return DatanestSettings(backoff_seconds=0.0, retries=3, max_parallel=4)


# ---------------------------------------------------------------------------
# Fake HTTP
# ---------------------------------------------------------------------------


class FakeResponse:
    """Minimal stand-in for a streamed ``requests.Response``."""

    def __init__(self, body: bytes = b"", status_code: int = 200) -> None:
        self.body = body
        self.status_code = status_code

    def iter_content(self, chunk_size: int = 1) -> Any:
        for start in range(0, len(self.body), chunk_size):
            yield self.body[start : start + chunk_size]

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *exc_info: Any) -> bool:
        return False


class FakeSession:
    """Replays queued responses or exceptions; repeats the last one."""

    def __init__(self, *outcomes: FakeResponse | Exception) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[str] = []

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append(url)
        index = min(len(self.calls), len(self.outcomes)) - 1
        outcome = self.outcomes[index]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def fake_session() -> Callable[..., FakeSession]:
    """Factory fixture: build a FakeSession from responses and exceptions."""
    return FakeSession


# ---------------------------------------------------------------------------
# Project factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_project(tmp_dir: Path) -> Callable[..., Path]:
    """Factory fixture: write a project directory and return its root.

    By default the project fetches ``data/raw.csv``, upper-cases it with
    ``scripts/clean.py`` and packages the result as ``report_data``.
    """

    def _factory(
        steps: list[dict[str, Any]] | None = None,
        *,
        name: str = "demo",
        scripts: dict[str, str] | None = None,
        files: dict[str, str] | None = None,
        root: Path | None = None,
    ) -> Path:
        project_root = root or tmp_dir / "project"
        project_root.mkdir(parents=True, exist_ok=True)
        all_files = {"data/raw.csv": RAW_CSV, "scripts/clean.py": UPPER_SCRIPT}
        all_files.update(scripts or {})
        all_files.update(files or {})
        for relative, content in all_files.items():
            path = project_root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        (project_root / "datanest.toml").write_text(
            render_project_toml(name, DEFAULT_STEPS if steps is None else steps)
        )
        return project_root

    return _factory


@pytest.fixture
def make_orchestrator(settings: DatanestSettings) -> Callable[..., Orchestrator]:
    """Factory fixture: load a project directory into an Orchestrator."""

    def _factory(
        project_root: Path, *, session: Any = None, **overrides: Any
    ) -> Orchestrator:
        return Orchestrator(
            load_project(project_root),
            settings=settings.with_overrides(**overrides),
            session=session,
        )

    return _factory


@pytest.fixture
def script_runs() -> Callable[[Path], int]:
    """Count how many times the default transform script has executed."""

    def _count(project_root: Path) -> int:
        log = project_root / "runs.log"
        return len(log.read_text().splitlines()) if log.exists() else 0

    return _count


@pytest.fixture
def raw_csv() -> str:
    """The default project's raw source text."""
    return RAW_CSV


@pytest.fixture
def fake_response() -> type[FakeResponse]:
    """The FakeResponse class, for building FakeSession outcomes."""
    return FakeResponse
