"""Transformer — runs deterministic scripts over cached inputs.

A transform script is invoked as::

    <interpreter> <script> <output_path> <input_path>...

with the working directory set to the project root and these variables in
its environment:

- ``DATANEST_OUTPUT``          where the script must write its result
- ``DATANEST_INPUTS``          input paths joined with ``os.pathsep``
- ``DATANEST_INPUT_<NAME>``    one path per upstream output name
- ``DATANEST_PROJECT_ROOT``    the project root

Failures are never retried: a non-zero exit, a missing output file, or an
output that fails its declared expectation raises ``TransformError``.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import os
import re
import subprocess
import sys
import tempfile
import zipfile
from collections.abc import Mapping
from pathlib import Path

from datanest.core.cache_store import CacheStore
from datanest.core.context import StepContext
from datanest.core.errors import (
    ConfigurationError,
    RunCancelled,
    StepTimeout,
    TransformError,
)
from datanest.core.hasher import file_sha256
from datanest.models.cache import CacheEntry
from datanest.models.steps import OutputExpectation

logger = logging.getLogger(__name__)

_DEFAULT_INTERPRETERS: dict[str, list[str]] = {
    ".py": [sys.executable],
    ".sh": ["sh"],
    ".r": ["Rscript"],
}
_POLL_SECONDS = 0.2
_DIAGNOSTIC_CHARS = 2000
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


def safe_filename(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "_", name) or "input"


def input_env_var(name: str) -> str:
    """The ``DATANEST_INPUT_*`` variable that carries input ``name``."""
    return "DATANEST_INPUT_" + re.sub(r"[^A-Za-z0-9]", "_", name).upper()


def _tail(text: bytes) -> str:
    decoded = text.decode("utf-8", errors="replace").strip()
    return decoded[-_DIAGNOSTIC_CHARS:]


class Transformer:
    """Runs transform scripts and packages outputs into artifacts.

    Parameters
    ----------
    cache:
        Source of input blobs and destination for outputs.
    project_root:
        Scripts are resolved against, and run from, this directory.
    """

    def __init__(self, cache: CacheStore, *, project_root: Path) -> None:
        self._cache = cache
        self._root = Path(project_root)

    # ------------------------------------------------------------------
    # Script identity
    # ------------------------------------------------------------------

    def resolve_script(self, script_ref: str) -> Path:
        path = Path(script_ref)
        return path if path.is_absolute() else self._root / path

    def script_hash(self, script_ref: str) -> str:
        """Content hash of a script; editing the script changes its keys."""
        path = self.resolve_script(script_ref)
        if not path.is_file():
            raise ConfigurationError(f"Script not found: {script_ref}")
        return file_sha256(path)

    def interpreter_for(self, script_ref: str, command: list[str] | None) -> list[str]:
        """Declared command, else a default chosen by the script's suffix."""
        if command:
            return list(command)
        return list(_DEFAULT_INTERPRETERS.get(Path(script_ref).suffix.lower(), []))

    # ------------------------------------------------------------------
    # Transform
    # ------------------------------------------------------------------

    def transform(
        self,
        script_ref: str,
        input_entries: Mapping[str, CacheEntry],
        destination_key: str,
        *,
        command: list[str] | None = None,
        expect: OutputExpectation | None = None,
        context: StepContext | None = None,
    ) -> CacheEntry:
        """Run ``script_ref`` over ``input_entries`` and commit its output.

        ``input_entries`` maps upstream output names to their entries, in
        the order the script receives them.
        """
        context = context or StepContext()

        def _produce() -> bytes:
            data = self._run_script(script_ref, input_entries, command, context)
            if expect is not None:
                check_expectation(script_ref, data, expect)
            context.checkpoint()
            return data

        entry, was_new = self._cache.get_or_compute(destination_key, _produce, context=context)
        if not was_new:
            logger.info("Transform %s already cached as %s", script_ref, destination_key[:12])
        return entry

    def _run_script(
        self,
        script_ref: str,
        input_entries: Mapping[str, CacheEntry],
        command: list[str] | None,
        context: StepContext,
    ) -> bytes:
        script = self.resolve_script(script_ref)
        with tempfile.TemporaryDirectory(prefix="datanest-") as tmp:
            tmp_dir = Path(tmp)
            inputs_dir = tmp_dir / "inputs"
            inputs_dir.mkdir()
            output_path = tmp_dir / "output"

            env = dict(os.environ)
            input_paths: list[str] = []
            for index, (name, entry) in enumerate(input_entries.items()):
                path = inputs_dir / f"{index:02d}-{safe_filename(name)}"
                path.write_bytes(self._cache.read_blob(entry.digest))
                input_paths.append(str(path))
                env[input_env_var(name)] = str(path)
            env["DATANEST_OUTPUT"] = str(output_path)
            env["DATANEST_INPUTS"] = os.pathsep.join(input_paths)
            env["DATANEST_PROJECT_ROOT"] = str(self._root)

            argv = [
                *self.interpreter_for(script_ref, command),
                str(script),
                str(output_path),
                *input_paths,
            ]
            context.checkpoint()
            logger.info("Running transform %s", script_ref)
            returncode, stderr = self._execute(script_ref, argv, env, context)

            if returncode != 0:
                raise TransformError(
                    script_ref,
                    f"exited with status {returncode}: {_tail(stderr) or '(no stderr)'}",
                )
            if not output_path.is_file():
                raise TransformError(script_ref, "script did not write its output file")
            return output_path.read_bytes()

    def _execute(
        self,
        script_ref: str,
        argv: list[str],
        env: dict[str, str],
        context: StepContext,
    ) -> tuple[int, bytes]:
        """Run ``argv``, killing it if the run is cancelled or times out."""
        try:
            proc = subprocess.Popen(
                argv,
                cwd=self._root,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise TransformError(script_ref, f"cannot execute {argv[0]!r}: {exc}") from exc

        with proc:
            while True:
                try:
                    _, stderr = proc.communicate(timeout=_POLL_SECONDS)
                    return proc.returncode, stderr
                except subprocess.TimeoutExpired:
                    try:
                        context.checkpoint()
                    except (RunCancelled, StepTimeout):
                        proc.kill()
                        proc.communicate()
                        logger.warning("Killed transform %s", script_ref)
                        raise

    # ------------------------------------------------------------------
    # Package
    # ------------------------------------------------------------------

    def package(
        self,
        input_entries: Mapping[str, CacheEntry],
        destination_key: str,
        *,
        context: StepContext | None = None,
    ) -> CacheEntry:
        """Bundle upstream outputs into the bytes of an artifact.

        A single input is passed through unchanged.  Several inputs become
        a zip archive with sorted member names and fixed timestamps, so the
        same inputs always produce the same bytes.
        """
        context = context or StepContext()

        def _produce() -> bytes:
            if len(input_entries) == 1:
                (entry,) = input_entries.values()
                data = self._cache.read_blob(entry.digest)
            else:
                data = self._build_archive(input_entries)
            context.checkpoint()
            return data

        entry, _ = self._cache.get_or_compute(destination_key, _produce, context=context)
        return entry

    def _build_archive(self, input_entries: Mapping[str, CacheEntry]) -> bytes:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as zf:
            for name in sorted(input_entries):
                info = zipfile.ZipInfo(name, date_time=_ZIP_EPOCH)
                info.compress_type = zipfile.ZIP_DEFLATED
                info.external_attr = 0o644 << 16
                zf.writestr(info, self._cache.read_blob(input_entries[name].digest))
        return buffer.getvalue()


def check_expectation(script_ref: str, data: bytes, expect: OutputExpectation) -> None:
    """Raise ``TransformError`` if ``data`` does not have the declared shape."""
    if len(data) < expect.min_bytes:
        raise TransformError(
            script_ref,
            f"output is {len(data)} bytes, expected at least {expect.min_bytes}",
        )

    fmt = expect.format or ("csv" if expect.columns else None)
    if fmt is None:
        return

    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise TransformError(script_ref, f"output is not UTF-8 text: {exc}") from exc

    if fmt == "json":
        try:
            doc = json.loads(text)
        except json.JSONDecodeError as exc:
            raise TransformError(script_ref, f"output is not valid JSON: {exc}") from exc
        if expect.min_rows:
            if not isinstance(doc, list):
                raise TransformError(script_ref, "expected a JSON array of rows")
            if len(doc) < expect.min_rows:
                raise TransformError(
                    script_ref,
                    f"output has {len(doc)} rows, expected at least {expect.min_rows}",
                )
        return

    rows = list(csv.reader(io.StringIO(text)))
    if not rows:
        raise TransformError(script_ref, "CSV output has no header row")
    header = [column.strip() for column in rows[0]]
    missing = [column for column in expect.columns if column not in header]
    if missing:
        raise TransformError(
            script_ref, f"CSV output is missing columns: {', '.join(missing)}"
        )
    data_rows = [row for row in rows[1:] if row]
    if len(data_rows) < expect.min_rows:
        raise TransformError(
            script_ref,
            f"output has {len(data_rows)} rows, expected at least {expect.min_rows}",
        )
