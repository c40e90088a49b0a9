"""Tests for the Transformer — script execution, packaging, output checks."""

from __future__ import annotations

import io
import sys
import threading
import zipfile

import pytest

from datanest.core.cache_store import CacheStore
from datanest.core.context import StepContext
from datanest.core.errors import ConfigurationError, RunCancelled, StepTimeout, TransformError
from datanest.core.transformer import Transformer, check_expectation
from datanest.models.steps import OutputExpectation

COPY_SCRIPT = """\
import sys
with open(sys.argv[2], "rb") as src, open(sys.argv[1], "wb") as out:
    out.write(src.read())
"""

ENV_SCRIPT = """\
import os
with open(os.environ["DATANEST_OUTPUT"], "w") as out:
    out.write(open(os.environ["DATANEST_INPUT_RAW_DATA"]).read() + "|")
    out.write(os.environ["DATANEST_INPUTS"])
"""

FAIL_SCRIPT = """\
import sys
sys.stderr.write("bad row 7\\n")
sys.exit(3)
"""

CONCAT_SCRIPT = """\
import sys
with open(sys.argv[1], "wb") as out:
    for path in sys.argv[2:]:
        out.write(open(path, "rb").read() + b"\\n")
"""

SLEEP_SCRIPT = """\
import time
time.sleep(30)
"""


@pytest.fixture
def transformer(cache_store: CacheStore, tmp_dir) -> Transformer:
    return Transformer(cache_store, project_root=tmp_dir)


def _script(tmp_dir, name: str, body: str) -> str:
    (tmp_dir / name).write_text(body)
    return name


class TestScriptIdentity:
    def test_script_hash_changes_with_content(self, transformer: Transformer, tmp_dir):
        ref = _script(tmp_dir, "t.py", COPY_SCRIPT)
        before = transformer.script_hash(ref)
        _script(tmp_dir, "t.py", COPY_SCRIPT + "# edited\n")
        assert transformer.script_hash(ref) != before

    def test_missing_script(self, transformer: Transformer):
        with pytest.raises(ConfigurationError, match="Script not found"):
            transformer.script_hash("absent.py")

    def test_interpreter_defaults(self, transformer: Transformer):
        assert transformer.interpreter_for("x.py", None) == [sys.executable]
        assert transformer.interpreter_for("x.sh", None) == ["sh"]
        assert transformer.interpreter_for("x.R", None) == ["Rscript"]
        assert transformer.interpreter_for("x.py", ["python3", "-X", "utf8"]) == [
            "python3",
            "-X",
            "utf8",
        ]


class TestTransform:
    def test_runs_script_and_commits_output(self, transformer, cache_store, tmp_dir):
        raw, _ = cache_store.put_if_absent("raw-key", b"a,b\n1,2\n")
        ref = _script(tmp_dir, "copy.py", COPY_SCRIPT)
        entry = transformer.transform(ref, {"raw": raw}, "out-key")
        assert cache_store.read(entry.key) == b"a,b\n1,2\n"

    def test_environment_variables(self, transformer, cache_store, tmp_dir):
        raw, _ = cache_store.put_if_absent("raw-key", b"hello")
        ref = _script(tmp_dir, "env.py", ENV_SCRIPT)
        entry = transformer.transform(ref, {"raw-data": raw}, "out-key")
        content, _, inputs = cache_store.read(entry.key).decode().partition("|")
        assert content == "hello"
        assert inputs.endswith("raw-data")

    def test_inputs_with_similar_names_stay_distinct(self, transformer, cache_store, tmp_dir):
        first, _ = cache_store.put_if_absent("k1", b"AAA")
        second, _ = cache_store.put_if_absent("k2", b"BBB")
        ref = _script(tmp_dir, "concat.py", CONCAT_SCRIPT)
        entry = transformer.transform(ref, {"raw data": first, "raw_data": second}, "out-key")
        assert cache_store.read(entry.key) == b"AAA\nBBB\n"

    def test_cached_output_not_recomputed(self, transformer, cache_store, tmp_dir):
        raw, _ = cache_store.put_if_absent("raw-key", b"x")
        cache_store.put_if_absent("out-key", b"already there")
        ref = _script(tmp_dir, "fail.py", FAIL_SCRIPT)
        entry = transformer.transform(ref, {"raw": raw}, "out-key")
        assert cache_store.read(entry.key) == b"already there"

    def test_nonzero_exit(self, transformer, cache_store, tmp_dir):
        raw, _ = cache_store.put_if_absent("raw-key", b"x")
        ref = _script(tmp_dir, "fail.py", FAIL_SCRIPT)
        with pytest.raises(TransformError) as excinfo:
            transformer.transform(ref, {"raw": raw}, "out-key")
        assert "status 3" in str(excinfo.value)
        assert "bad row 7" in excinfo.value.diagnostic
        assert cache_store.get("out-key") is None

    def test_missing_output_file(self, transformer, cache_store, tmp_dir):
        raw, _ = cache_store.put_if_absent("raw-key", b"x")
        ref = _script(tmp_dir, "noop.py", "pass\n")
        with pytest.raises(TransformError, match="did not write its output"):
            transformer.transform(ref, {"raw": raw}, "out-key")

    def test_expectation_failure_commits_nothing(self, transformer, cache_store, tmp_dir):
        raw, _ = cache_store.put_if_absent("raw-key", b"a,b\n")
        ref = _script(tmp_dir, "copy.py", COPY_SCRIPT)
        with pytest.raises(TransformError, match="rows"):
            transformer.transform(
                ref, {"raw": raw}, "out-key", expect=OutputExpectation(columns=["a"], min_rows=1)
            )
        assert cache_store.get("out-key") is None

    def test_timeout_kills_script(self, transformer, cache_store, tmp_dir):
        raw, _ = cache_store.put_if_absent("raw-key", b"x")
        ref = _script(tmp_dir, "sleep.py", SLEEP_SCRIPT)
        with pytest.raises(StepTimeout):
            transformer.transform(
                ref, {"raw": raw}, "out-key", context=StepContext("slow", timeout=0.5)
            )
        assert cache_store.get("out-key") is None

    def test_cancel_kills_script(self, transformer, cache_store, tmp_dir):
        raw, _ = cache_store.put_if_absent("raw-key", b"x")
        ref = _script(tmp_dir, "sleep.py", SLEEP_SCRIPT)
        event = threading.Event()
        threading.Timer(0.3, event.set).start()
        with pytest.raises(RunCancelled):
            transformer.transform(
                ref, {"raw": raw}, "out-key", context=StepContext("slow", cancel_event=event)
            )
        assert cache_store.get("out-key") is None


class TestPackage:
    def test_single_input_passthrough(self, transformer, cache_store):
        only, _ = cache_store.put_if_absent("in", b"payload")
        entry = transformer.package({"clean": only}, "pkg")
        assert entry.digest == only.digest

    def test_multiple_inputs_zip_is_deterministic(self, transformer, cache_store):
        a, _ = cache_store.put_if_absent("a", b"AAA")
        b, _ = cache_store.put_if_absent("b", b"BBB")
        first = transformer.package({"b": b, "a": a}, "pkg-1")
        second = transformer.package({"a": a, "b": b}, "pkg-2")
        assert first.digest == second.digest

        with zipfile.ZipFile(io.BytesIO(cache_store.read("pkg-1"))) as zf:
            assert zf.namelist() == ["a", "b"]
            assert zf.read("b") == b"BBB"


class TestExpectation:
    def test_min_bytes(self):
        with pytest.raises(TransformError, match="at least 10"):
            check_expectation("s", b"short", OutputExpectation(min_bytes=10))

    def test_csv_columns(self):
        expect = OutputExpectation(format="csv", columns=["id", "score"])
        check_expectation("s", b"id,score,extra\n1,2,3\n", expect)
        with pytest.raises(TransformError, match="missing columns: score"):
            check_expectation("s", b"id,extra\n1,3\n", expect)

    def test_json_rows(self):
        expect = OutputExpectation(format="json", min_rows=2)
        check_expectation("s", b"[1, 2]", expect)
        with pytest.raises(TransformError, match="1 rows"):
            check_expectation("s", b"[1]", expect)
        with pytest.raises(TransformError, match="JSON array"):
            check_expectation("s", b'{"a": 1}', expect)

    def test_invalid_json(self):
        with pytest.raises(TransformError, match="not valid JSON"):
            check_expectation("s", b"{", OutputExpectation(format="json"))
