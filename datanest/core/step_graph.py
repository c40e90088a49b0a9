"""Step dependency DAG with validation and cascade blocking.

The graph enforces, before anything runs:
- step names are unique and every dependency names a declared step
- the dependencies form a DAG
- each step has the fields its kind requires

During a run it answers which steps are ready and which transitive
dependents must be blocked when a step fails.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable

from datanest.core.errors import ConfigurationError
from datanest.core.transformer import input_env_var
from datanest.models.steps import (
    COMPLETED_STATES,
    StepDefinition,
    StepKind,
    StepState,
)


class CyclicDependencyError(ConfigurationError):
    """Raised when the step graph contains a cycle."""


class StepGraph:
    """Directed acyclic graph of step dependencies.

    Built from ``StepDefinition.depends_on`` when a run is planned.
    """

    def __init__(self, steps: Iterable[StepDefinition]) -> None:
        steps = list(steps)
        self._order: dict[str, int] = {}
        self._steps: dict[str, StepDefinition] = {}
        for index, step in enumerate(steps):
            if step.name in self._steps:
                raise ConfigurationError(f"Duplicate step name: {step.name!r}")
            self._steps[step.name] = step
            self._order[step.name] = index

        # Forward edges: name -> upstream step names
        self._prerequisites: dict[str, list[str]] = {
            s.name: list(s.depends_on) for s in steps
        }
        # Reverse edges: name -> steps that depend on it
        self._dependents: dict[str, list[str]] = {s.name: [] for s in steps}
        for step in steps:
            for upstream in step.depends_on:
                if upstream == step.name:
                    raise ConfigurationError(f"Step {step.name!r} depends on itself")
                if upstream not in self._steps:
                    raise ConfigurationError(
                        f"Step {step.name!r} depends on unknown step {upstream!r}"
                    )
                self._dependents[upstream].append(step.name)

        for step in steps:
            self._validate_shape(step)
        self._validate_no_cycles()

    def _validate_shape(self, step: StepDefinition) -> None:
        """Check the fields each step kind requires or forbids."""
        name = step.name
        if len(set(step.depends_on)) != len(step.depends_on):
            raise ConfigurationError(f"Step {name!r} lists a dependency twice")

        if step.kind == StepKind.FETCH:
            if not step.source:
                raise ConfigurationError(f"Fetch step {name!r} needs a source")
            if step.depends_on:
                raise ConfigurationError(f"Fetch step {name!r} cannot have dependencies")
        else:
            if step.source or step.checksum or step.revalidate:
                raise ConfigurationError(
                    f"Only fetch steps take source/checksum/revalidate ({name!r})"
                )

        if step.kind == StepKind.TRANSFORM and not step.script:
            raise ConfigurationError(f"Transform step {name!r} needs a script")

        if step.kind == StepKind.PACKAGE:
            if not step.depends_on:
                raise ConfigurationError(f"Package step {name!r} has nothing to package")
        elif step.version is not None or step.override:
            raise ConfigurationError(
                f"Only package steps take version/override ({name!r})"
            )

        input_names = [self._steps[u].output_name for u in step.depends_on]
        if len(set(input_names)) != len(input_names):
            raise ConfigurationError(
                f"Step {name!r} has two inputs with the same output name"
            )

        if step.script:
            # Sanitized names collide whenever the input file names would.
            seen: dict[str, str] = {}
            for input_name in input_names:
                variable = input_env_var(input_name)
                if variable in seen:
                    raise ConfigurationError(
                        f"Step {name!r}: inputs {seen[variable]!r} and {input_name!r} "
                        f"both map to {variable}"
                    )
                seen[variable] = input_name

    def _validate_no_cycles(self) -> None:
        """Verify the graph is a DAG using topological sort (Kahn's algorithm)."""
        in_degree = {name: len(ups) for name, ups in self._prerequisites.items()}
        queue = deque(name for name, deg in in_degree.items() if deg == 0)
        visited = 0

        while queue:
            node = queue.popleft()
            visited += 1
            for dep in self._dependents.get(node, []):
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    queue.append(dep)

        if visited != len(self._steps):
            stuck = sorted(name for name, deg in in_degree.items() if deg > 0)
            raise CyclicDependencyError(
                f"Step graph has a cycle through: {', '.join(stuck)}"
            )

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    def __contains__(self, name: object) -> bool:
        return name in self._steps

    def __len__(self) -> int:
        return len(self._steps)

    def get_step(self, name: str) -> StepDefinition:
        return self._steps[name]

    def get_prerequisites(self, name: str) -> list[str]:
        """Return direct upstream step names, in declaration order."""
        return list(self._prerequisites.get(name, []))

    def get_dependents(self, name: str) -> list[str]:
        """Return all transitive dependent step names (BFS)."""
        return self._walk(name, self._dependents)

    def get_ancestors(self, name: str) -> list[str]:
        """Return all transitive upstream step names (BFS)."""
        return self._walk(name, self._prerequisites)

    @staticmethod
    def _walk(start: str, edges: dict[str, list[str]]) -> list[str]:
        result: list[str] = []
        queue = deque(edges.get(start, []))
        visited: set[str] = set()
        while queue:
            node = queue.popleft()
            if node in visited:
                continue
            visited.add(node)
            result.append(node)
            queue.extend(edges.get(node, []))
        return result

    @property
    def step_names(self) -> list[str]:
        """Return all step names in topological order.

        Ties are broken by declaration order so the order is stable.
        """
        in_degree = {name: len(ups) for name, ups in self._prerequisites.items()}
        queue = deque(
            sorted(
                (name for name, deg in in_degree.items() if deg == 0),
                key=self._order.__getitem__,
            )
        )
        result = []
        while queue:
            node = queue.popleft()
            result.append(node)
            for dep in sorted(self._dependents.get(node, []), key=self._order.__getitem__):
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    queue.append(dep)
        return result

    def select(
        self,
        *,
        kinds: Iterable[StepKind] | None = None,
        targets: Iterable[str] | None = None,
    ) -> list[str]:
        """Steps to run for a partial invocation, in topological order.

        Picks steps matching ``kinds`` and/or named in ``targets`` and adds
        every transitive upstream dependency.  With neither, selects all.
        """
        if kinds is None and targets is None:
            return self.step_names

        wanted: set[str] = set()
        if kinds is not None:
            kind_set = set(kinds)
            wanted.update(n for n, s in self._steps.items() if s.kind in kind_set)
        for target in targets or ():
            if target not in self:
                raise ConfigurationError(f"Unknown step: {target!r}")
            wanted.add(target)

        closure = set(wanted)
        for name in wanted:
            closure.update(self.get_ancestors(name))
        return [name for name in self.step_names if name in closure]

    # ------------------------------------------------------------------
    # Readiness and cascade blocking
    # ------------------------------------------------------------------

    def are_prerequisites_met(self, name: str, states: dict[str, StepState]) -> bool:
        """Check if every upstream step is SUCCESS or SKIPPED."""
        return all(
            states.get(upstream) in COMPLETED_STATES
            for upstream in self._prerequisites.get(name, [])
        )

    def get_blocking_reasons(self, name: str, states: dict[str, StepState]) -> list[str]:
        """Return human-readable reasons why a step cannot run."""
        reasons = []
        for upstream in self._prerequisites.get(name, []):
            state = states.get(upstream, StepState.PENDING)
            if state not in COMPLETED_STATES:
                reasons.append(f"{upstream} is {state.value}")
        return reasons

    def cascade_block(self, failed: str, states: dict[str, StepState]) -> list[str]:
        """When a step fails, block all transitive dependents still PENDING.

        Only names present in ``states`` are touched, so a partial run's
        state map limits the cascade to the selected steps.  Returns the
        newly blocked step names.
        """
        blocked: list[str] = []
        for name in self.get_dependents(failed):
            if states.get(name) == StepState.PENDING:
                states[name] = StepState.BLOCKED
                blocked.append(name)
        return blocked
