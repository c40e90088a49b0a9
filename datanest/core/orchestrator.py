"""Pipeline orchestrator — the central coordinator for datanest runs.

The Orchestrator wires together the CacheStore, Fetcher, Transformer,
Registry, StepGraph and StepTracker into one execution engine.

For every selected step, in dependency order:

1. compute the cache key from the step definition, its script's content
   hash and the digests of its (already committed) upstream outputs
2. on a cache hit mark the step SKIPPED and reuse the entry
3. otherwise run it (fetch, transform or package), commit, and for
   package steps register the artifact
4. on failure mark it FAILED and block its transitive dependents

Independent steps run concurrently on a thread pool.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from pathlib import Path

import requests

from datanest.config import DatanestSettings
from datanest.core.cache_store import CacheStore
from datanest.core.context import StepContext
from datanest.core.errors import ConfigurationError, DatanestError
from datanest.core.fetcher import Fetcher
from datanest.core.hasher import compute_cache_key, validate_checksum
from datanest.core.loader import Loader
from datanest.core.registry import Registry
from datanest.core.step_graph import StepGraph
from datanest.core.step_tracker import StepTracker
from datanest.core.transformer import Transformer
from datanest.models.artifacts import ArtifactCandidate, ArtifactRecord
from datanest.models.cache import CacheEntry
from datanest.models.project import Project
from datanest.models.reports import RunReport, StepResult
from datanest.models.steps import StepDefinition, StepKind, StepState

logger = logging.getLogger(__name__)


def resolve_data_root(project: Project, settings: DatanestSettings) -> Path:
    """Settings override first, then the project's own data root.

    A relative override is taken relative to the project root.
    """
    if settings.data_root is None:
        return project.resolved_data_root
    if settings.data_root.is_absolute():
        return settings.data_root
    return project.root / settings.data_root


class Orchestrator:
    """Central pipeline orchestrator for one project.

    Parameters
    ----------
    project:
        The project whose steps are run.
    settings:
        Runtime settings. Uses environment-driven defaults if not provided.
    session:
        ``requests.Session`` handed to the Fetcher.
    """

    def __init__(
        self,
        project: Project,
        *,
        settings: DatanestSettings | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.project = project
        self.settings = settings or DatanestSettings()
        self.data_root = resolve_data_root(project, self.settings)

        # Core subsystems
        self.cache = CacheStore(self.data_root / "cache")
        self.registry = Registry(self.data_root / "registry.db")
        self.fetcher = Fetcher(
            self.cache,
            project_root=project.root,
            retries=self.settings.retries,
            backoff_seconds=self.settings.backoff_seconds,
            http_timeout=self.settings.http_timeout,
            session=session,
        )
        self.transformer = Transformer(self.cache, project_root=project.root)
        self.loader = Loader(self.registry, self.cache)

        self._cancel_event: threading.Event | None = None

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(
        self,
        project: Project | None = None,
        *,
        kinds: Iterable[StepKind] | None = None,
        targets: Iterable[str] | None = None,
    ) -> tuple[StepGraph, list[str]]:
        """Validate the project and select the steps to run.

        Raises ``ConfigurationError`` (cycles, unknown references, missing
        scripts, bad checksums) before anything executes.
        """
        project = project or self.project
        graph = StepGraph(project.steps)
        selected = graph.select(kinds=kinds, targets=targets)

        for name in selected:
            step = graph.get_step(name)
            if step.script:
                self.transformer.script_hash(step.script)
            if step.checksum:
                try:
                    validate_checksum(step.checksum)
                except ValueError as exc:
                    raise ConfigurationError(f"Step {name!r}: {exc}") from exc
        return graph, selected

    def compute_cache_key(
        self, step: StepDefinition, upstream: dict[str, CacheEntry]
    ) -> str:
        """Cache key for ``step`` given its resolved upstream entries."""
        script_hash = self.transformer.script_hash(step.script) if step.script else ""
        params: dict[str, object] = {"inputs": list(upstream)}
        if step.kind == StepKind.FETCH:
            params["checksum"] = step.checksum or ""
        if step.script:
            params["command"] = step.command or []
        if step.expect is not None:
            params["expect"] = step.expect.model_dump(mode="json")
        if step.kind == StepKind.PACKAGE and not step.script:
            params["layout"] = "passthrough" if len(upstream) == 1 else "zip"
        return compute_cache_key(
            step.kind.value,
            script_hash=script_hash,
            upstream={name: entry.digest for name, entry in upstream.items()},
            source=step.source or "",
            params=params,
        )

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Signal the active run to stop starting steps and abort in-flight ones."""
        if self._cancel_event is not None:
            self._cancel_event.set()

    def run(
        self,
        project: Project | None = None,
        *,
        kinds: Iterable[StepKind] | None = None,
        targets: Iterable[str] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> RunReport:
        """Run the selected steps and return the report.

        ``ConfigurationError`` propagates before any step starts; every
        other failure is recorded in the report.
        """
        project = project or self.project
        graph, selected = self.plan(project, kinds=kinds, targets=targets)
        cancel_event = cancel_event or threading.Event()
        self._cancel_event = cancel_event

        started_at = datetime.now(timezone.utc)
        tracker = StepTracker(graph, selected)
        outputs: dict[str, CacheEntry] = {}
        outputs_lock = threading.Lock()
        results: dict[str, StepResult] = {}
        logger.info("Run of %s: %d step(s) selected", project.name, len(selected))

        with ThreadPoolExecutor(
            max_workers=self.settings.max_parallel, thread_name_prefix="datanest"
        ) as pool:
            in_flight: dict[Future[StepResult], str] = {}
            submitted: set[str] = set()
            while True:
                if not cancel_event.is_set():
                    for name in tracker.ready():
                        if name in submitted:
                            continue
                        submitted.add(name)
                        future = pool.submit(
                            self._run_step,
                            graph,
                            graph.get_step(name),
                            tracker,
                            outputs,
                            outputs_lock,
                            cancel_event,
                        )
                        in_flight[future] = name
                if not in_flight:
                    break
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    name = in_flight.pop(future)
                    results[name] = future.result()

        if cancel_event.is_set():
            cancelled = tracker.block_remaining()
            if cancelled:
                logger.warning("Run cancelled; %d step(s) never started", len(cancelled))

        states = tracker.snapshot()
        for name in selected:
            if name in results:
                continue
            reasons = graph.get_blocking_reasons(name, states)
            results[name] = StepResult(
                name=name,
                kind=graph.get_step(name).kind,
                status=states[name],
                error_kind="Blocked",
                error_message="; ".join(reasons) or "run cancelled",
            )

        report = RunReport(
            project=project.name,
            steps=[results[name] for name in selected],
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            cancelled=cancel_event.is_set(),
        )
        self._cancel_event = None
        logger.info(
            "Run %s finished: %s",
            report.run_id,
            ", ".join(f"{r.name}={r.status.value}" for r in report.steps),
        )
        return report

    # ------------------------------------------------------------------
    # Step execution
    # ------------------------------------------------------------------

    def _run_step(
        self,
        graph: StepGraph,
        step: StepDefinition,
        tracker: StepTracker,
        outputs: dict[str, CacheEntry],
        outputs_lock: threading.Lock,
        cancel_event: threading.Event,
    ) -> StepResult:
        """Evaluate one step on a worker thread.  Never raises."""
        started_at = datetime.now(timezone.utc)
        context = StepContext(step.name, timeout=step.timeout, cancel_event=cancel_event)
        cache_key = ""
        running = False

        def _result(status: StepState, **fields: object) -> StepResult:
            finished_at = datetime.now(timezone.utc)
            return StepResult(
                name=step.name,
                kind=step.kind,
                status=status,
                cache_key=cache_key,
                started_at=started_at,
                finished_at=finished_at,
                duration_seconds=(finished_at - started_at).total_seconds(),
                **fields,
            )

        try:
            with outputs_lock:
                upstream = {
                    graph.get_step(name).output_name: outputs[name]
                    for name in step.depends_on
                }
            cache_key = self.compute_cache_key(step, upstream)

            if not step.revalidate:
                entry = self.cache.get(cache_key)
                if entry is not None:
                    record = self._registered_for(step, entry)
                    if step.kind != StepKind.PACKAGE or record is not None:
                        with outputs_lock:
                            outputs[step.name] = entry
                        tracker.transition(step.name, StepState.SKIPPED)
                        logger.info("Step %s skipped (cached %s)", step.name, cache_key[:12])
                        return _result(
                            StepState.SKIPPED,
                            digest=entry.digest,
                            **self._artifact_fields(step, record),
                        )

            tracker.transition(step.name, StepState.RUNNING)
            running = True
            logger.info("Step %s running", step.name)
            context.checkpoint()

            entry, record = self._execute(step, cache_key, upstream, context)
            cache_key = entry.key
            with outputs_lock:
                outputs[step.name] = entry
            tracker.transition(step.name, StepState.SUCCESS)
            logger.info("Step %s succeeded (%s)", step.name, entry.digest)
            return _result(
                StepState.SUCCESS,
                digest=entry.digest,
                **self._artifact_fields(step, record),
            )

        except DatanestError as exc:
            logger.error("Step %s failed: %s: %s", step.name, exc.kind, exc)
            return self._fail(tracker, step, running, _result, exc.kind, str(exc))
        except Exception as exc:
            logger.exception("Step %s failed unexpectedly", step.name)
            return self._fail(
                tracker, step, running, _result, "InternalError", f"{type(exc).__name__}: {exc}"
            )

    @staticmethod
    def _fail(
        tracker: StepTracker,
        step: StepDefinition,
        running: bool,
        make_result: Callable[..., StepResult],
        kind: str,
        message: str,
    ) -> StepResult:
        if not running:
            tracker.transition(step.name, StepState.RUNNING)
        tracker.transition(step.name, StepState.FAILED)
        return make_result(StepState.FAILED, error_kind=kind, error_message=message)

    def _execute(
        self,
        step: StepDefinition,
        cache_key: str,
        upstream: dict[str, CacheEntry],
        context: StepContext,
    ) -> tuple[CacheEntry, ArtifactRecord | None]:
        if step.kind == StepKind.FETCH:
            if step.revalidate:
                entry, _ = self.fetcher.probe(
                    step.source, cache_key, checksum=step.checksum, context=context
                )
            else:
                entry = self.fetcher.fetch(
                    step.source, cache_key, checksum=step.checksum, context=context
                )
            return entry, None

        if step.script:
            entry = self.transformer.transform(
                step.script,
                upstream,
                cache_key,
                command=step.command,
                expect=step.expect,
                context=context,
            )
        else:
            entry = self.transformer.package(upstream, cache_key, context=context)

        if step.kind != StepKind.PACKAGE:
            return entry, None

        context.checkpoint()
        record = self.registry.register(
            step.output_name,
            ArtifactCandidate(
                digest=entry.digest,
                source_cache_key=entry.key,
                size_bytes=entry.size_bytes,
                version=step.version,
                override=step.override,
            ),
        )
        return entry, record

    def _registered_for(
        self, step: StepDefinition, entry: CacheEntry
    ) -> ArtifactRecord | None:
        """The latest registration, if it already carries this entry's content."""
        if step.kind != StepKind.PACKAGE:
            return None
        latest = self.registry.latest(step.output_name)
        if latest is not None and latest.digest == entry.digest:
            return latest
        return None

    @staticmethod
    def _artifact_fields(
        step: StepDefinition, record: ArtifactRecord | None
    ) -> dict[str, object]:
        if record is None:
            return {}
        return {"artifact_name": step.output_name, "artifact_version": record.version}
