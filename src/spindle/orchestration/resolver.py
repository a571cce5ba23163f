"""
Dependency Graph Resolver - validates and orders a unit set.

The graph is derived from the units of one run and recomputed on every
orchestration pass. Construction performs every static check, so an
invalid unit set never reaches the scheduler:

1. Unit ids are unique
2. Every ``requires`` entry names a unit in the set
3. ``requires`` edges form a DAG (self-reference counts as a cycle)

Rather than a single linear order the scheduler consumes a *frontier*:
the units whose requirements are all satisfied right now. Recomputing it
after every completion gives maximal parallelism.

Design Principles:
- Pure, no side effects (no processes, no contexts)
- Deterministic: declaration order breaks ties everywhere
- Clear error messages naming the offending unit ids
"""

from collections import defaultdict, deque
from collections.abc import Iterable, Sequence

import structlog

from spindle.orchestration.exceptions import (
    CyclicDependencyError,
    DuplicateUnitError,
    UnknownDependencyError,
)
from spindle.orchestration.models import Unit

logger = structlog.get_logger()


class DependencyGraph:
    """
    Validated ``requires`` graph over one run's units.

    Immutable after construction; safe to share between the scheduler and
    status views.

    Example:
        graph = DependencyGraph([db, migrate, api])
        graph.frontier(satisfied=set())          # [db]
        graph.frontier(satisfied={"db"})         # [migrate]
        graph.dependents("db")                   # ["migrate", "api"]
    """

    def __init__(self, units: Sequence[Unit]):
        """
        Build and validate the graph.

        Raises:
            DuplicateUnitError: Two units share an id
            UnknownDependencyError: A unit requires an id not in the set
            CyclicDependencyError: The requires edges contain a cycle
        """
        self._units: list[Unit] = list(units)
        self._by_id: dict[str, Unit] = {}
        for unit in self._units:
            if unit.id in self._by_id:
                raise DuplicateUnitError(unit.id)
            self._by_id[unit.id] = unit

        self._validate_dependencies()
        self._validate_no_cycles()

        # Reverse edges, kept in declaration order
        self._dependents: dict[str, list[str]] = defaultdict(list)
        for unit in self._units:
            for dep in self._sorted_requires(unit):
                self._dependents[dep].append(unit.id)

        logger.debug(
            "dependency_graph.validated",
            unit_count=len(self._units),
            edge_count=sum(len(u.requires) for u in self._units),
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def units(self) -> list[Unit]:
        """Units in declaration order."""
        return list(self._units)

    @property
    def unit_ids(self) -> list[str]:
        return [u.id for u in self._units]

    def __len__(self) -> int:
        return len(self._units)

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self._by_id

    def get(self, unit_id: str) -> Unit:
        return self._by_id[unit_id]

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def frontier(
        self,
        satisfied: Iterable[str],
        excluded: Iterable[str] = (),
    ) -> list[Unit]:
        """
        Units eligible to start now.

        Args:
            satisfied: Ids of units that reached a success state
                (Succeeded oneshots, Ready daemons)
            excluded: Ids already started, failed or otherwise out of play

        Returns:
            Units not in either set whose requires are all satisfied,
            in declaration order
        """
        done = set(satisfied)
        skip = done | set(excluded)
        return [
            u for u in self._units
            if u.id not in skip and u.requires <= done
        ]

    def dependents(self, unit_id: str) -> list[str]:
        """Ids of every unit that transitively requires ``unit_id``."""
        seen: set[str] = set()
        queue = deque(self._dependents.get(unit_id, ()))
        while queue:
            node = queue.popleft()
            if node in seen:
                continue
            seen.add(node)
            queue.extend(self._dependents.get(node, ()))
        return [u.id for u in self._units if u.id in seen]

    def topological_order(self) -> list[Unit]:
        """
        Topological sort using Kahn's algorithm.

        Stable: units that become eligible together keep declaration order.
        """
        in_degree = {u.id: len(u.requires) for u in self._units}
        queue = deque(u.id for u in self._units if in_degree[u.id] == 0)
        result: list[Unit] = []

        while queue:
            node = queue.popleft()
            result.append(self._by_id[node])
            for neighbor in self._dependents.get(node, ()):
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        return result

    def waves(self) -> list[list[str]]:
        """
        Frontier sequence assuming every unit succeeds.

        Each wave is what the scheduler would launch concurrently once all
        previous waves have succeeded.
        """
        satisfied: set[str] = set()
        waves: list[list[str]] = []
        while len(satisfied) < len(self._units):
            wave = [u.id for u in self.frontier(satisfied)]
            waves.append(wave)
            satisfied.update(wave)
        return waves

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_dependencies(self) -> None:
        """Validate all requires reference existing units."""
        for unit in self._units:
            missing = [dep for dep in self._sorted_requires(unit) if dep not in self._by_id]
            if missing:
                raise UnknownDependencyError(unit.id, missing)

    def _validate_no_cycles(self) -> None:
        """
        Validate the requires graph is a DAG.

        Uses depth-first search with three-color marking:
        - WHITE (0): Unvisited
        - GRAY (1): Currently visiting (on current path)
        - BLACK (2): Finished visiting

        Reaching a GRAY node is a back-edge, i.e. a cycle. A unit that
        requires itself is a back-edge to itself.
        """
        WHITE, GRAY, BLACK = 0, 1, 2

        color = {u.id: WHITE for u in self._units}
        path: list[str] = []

        def dfs(node: str) -> list[str] | None:
            color[node] = GRAY
            path.append(node)

            for neighbor in self._sorted_requires(self._by_id[node]):
                if color[neighbor] == GRAY:
                    cycle_start = path.index(neighbor)
                    return path[cycle_start:] + [neighbor]
                if color[neighbor] == WHITE:
                    result = dfs(neighbor)
                    if result:
                        return result

            color[node] = BLACK
            path.pop()
            return None

        for unit in self._units:
            if color[unit.id] == WHITE:
                cycle = dfs(unit.id)
                if cycle:
                    logger.warning("dependency_graph.cycle", cycle=cycle)
                    raise CyclicDependencyError(cycle)

    def _sorted_requires(self, unit: Unit) -> list[str]:
        # requires is a frozenset; sort for deterministic traversal and messages
        return sorted(unit.requires)


def validate_units(units: Sequence[Unit]) -> list[str]:
    """
    Validate a unit set without keeping the graph.

    Returns list of error messages (empty if valid). Useful for manifest
    validation before a run is started.
    """
    try:
        DependencyGraph(units)
    except (DuplicateUnitError, UnknownDependencyError, CyclicDependencyError) as e:
        return [str(e)]
    return []
