"""
Unit dependency graph with Tarjan's algorithm for cycle detection.

Units live in an arena (a plain list) and edges are stored as index
lists, so the graph can be serialized and checked without chasing
object references.
"""

import heapq
from typing import Dict, Iterator, List, Optional, Set

from .errors import CycleDetectedError, DuplicateUnitError, UnknownDependencyError
from .units import Condition, Unit


class UnitGraph:
    """
    Arena of units plus index-based upstream/downstream adjacency.

    Edges point from a unit to the units it depends on (upstream).
    Ordering helpers return upstream units first.
    """

    def __init__(self):
        self._units: List[Unit] = []
        self._index: Dict[str, int] = {}
        self._upstream: List[List[int]] = []
        self._downstream: List[List[int]] = []
        self._resolved = False

    @classmethod
    def from_units(cls, units: List[Unit]) -> "UnitGraph":
        """Build and validate a graph in one step."""
        graph = cls()
        for unit in units:
            graph.add(unit)
        graph.resolve()
        return graph

    def add(self, unit: Unit) -> int:
        """
        Add a unit to the arena.

        Returns:
            Index of the unit

        Raises:
            DuplicateUnitError: If the name is already taken
        """
        if unit.name in self._index:
            raise DuplicateUnitError(unit.name)
        idx = len(self._units)
        self._units.append(unit)
        self._index[unit.name] = idx
        self._upstream.append([])
        self._downstream.append([])
        self._resolved = False
        return idx

    def resolve(self) -> None:
        """
        Resolve names to indices and reject cycles.

        Raises:
            UnknownDependencyError: If a unit depends on an undeclared name
            CycleDetectedError: If the dependency graph is not a DAG
        """
        self._upstream = [[] for _ in self._units]
        self._downstream = [[] for _ in self._units]

        for idx, unit in enumerate(self._units):
            for dep in unit.depends_on:
                if dep.name not in self._index:
                    raise UnknownDependencyError(unit.name, dep.name, list(self._index))
                dep_idx = self._index[dep.name]
                self._upstream[idx].append(dep_idx)
                self._downstream[dep_idx].append(idx)

        cycle = self.find_cycle()
        if cycle:
            raise CycleDetectedError(cycle)
        self._resolved = True

    # ── Lookup ───────────────────────────────────────────────────────

    def index_of(self, name: str) -> int:
        return self._index[name]

    def unit(self, key) -> Unit:
        """Fetch a unit by index or name."""
        if isinstance(key, str):
            key = self._index[key]
        return self._units[key]

    @property
    def units(self) -> List[Unit]:
        return list(self._units)

    def upstream_of(self, idx: int) -> List[int]:
        return list(self._upstream[idx])

    def downstream_of(self, idx: int) -> List[int]:
        return list(self._downstream[idx])

    def edge_condition(self, idx: int, upstream_idx: int) -> Condition:
        """Condition unit ``idx`` waits for on ``upstream_idx``."""
        upstream = self._units[upstream_idx]
        for dep in self._units[idx].depends_on:
            if dep.name == upstream.name and dep.condition is not None:
                return dep.condition
        return upstream.condition

    def dependents(self, name: str) -> List[str]:
        """Units that depend directly on ``name``."""
        return [self._units[i].name for i in self._downstream[self._index[name]]]

    def transitive_dependents(self, name: str) -> Set[str]:
        """Every unit that depends on ``name`` directly or transitively."""
        seen: Set[int] = set()
        stack = list(self._downstream[self._index[name]])
        while stack:
            idx = stack.pop()
            if idx in seen:
                continue
            seen.add(idx)
            stack.extend(self._downstream[idx])
        return {self._units[i].name for i in seen}

    # ── Analysis ─────────────────────────────────────────────────────

    def find_cycle(self) -> Optional[List[str]]:
        """
        Find a cycle using Tarjan's algorithm.

        The result is deterministic: it starts at the earliest declared
        unit of the first strongly connected component found and follows
        dependency edges.

        Returns:
            Unit names forming the cycle, or None
        """
        for idx, ups in enumerate(self._upstream):
            if idx in ups:
                return [self._units[idx].name]

        index_counter = [0]
        stack: List[int] = []
        lowlinks: Dict[int, int] = {}
        index: Dict[int, int] = {}
        on_stack: Set[int] = set()
        components: List[List[int]] = []

        def strongconnect(node: int) -> None:
            index[node] = index_counter[0]
            lowlinks[node] = index_counter[0]
            index_counter[0] += 1
            stack.append(node)
            on_stack.add(node)

            for dep in self._upstream[node]:
                if dep not in index:
                    strongconnect(dep)
                    lowlinks[node] = min(lowlinks[node], lowlinks[dep])
                elif dep in on_stack:
                    lowlinks[node] = min(lowlinks[node], index[dep])

            if lowlinks[node] == index[node]:
                component: List[int] = []
                while True:
                    w = stack.pop()
                    on_stack.remove(w)
                    component.append(w)
                    if w == node:
                        break
                if len(component) > 1:
                    components.append(component)

        for node in range(len(self._units)):
            if node not in index:
                strongconnect(node)

        if not components:
            return None

        return [self._units[i].name for i in self._cycle_path(set(components[0]))]

    def _cycle_path(self, component: Set[int]) -> List[int]:
        # Walk edges inside the component until a node repeats.
        start = min(component)
        path: List[int] = []
        position: Dict[int, int] = {}
        node = start
        while node not in position:
            position[node] = len(path)
            path.append(node)
            node = next(dep for dep in self._upstream[node] if dep in component)
        cycle = path[position[node]:]
        pivot = cycle.index(min(cycle))
        return cycle[pivot:] + cycle[:pivot]

    def topological_order(self) -> List[str]:
        """
        Start order: upstream units first, ties broken by declaration order.

        Raises:
            CycleDetectedError: If a cycle exists
        """
        return [self._units[i].name for i in self.topological_indices()]

    def topological_indices(self) -> List[int]:
        cycle = self.find_cycle()
        if cycle:
            raise CycleDetectedError(cycle)

        pending = [len(ups) for ups in self._upstream]
        ready = [idx for idx, count in enumerate(pending) if count == 0]
        heapq.heapify(ready)
        order: List[int] = []

        while ready:
            idx = heapq.heappop(ready)
            order.append(idx)
            for down in self._downstream[idx]:
                pending[down] -= 1
                if pending[down] == 0:
                    heapq.heappush(ready, down)

        return order

    def layers(self) -> List[List[str]]:
        """
        Dependency layers: every unit in a layer can start in parallel
        once all previous layers have started.
        """
        layers: List[List[str]] = []
        placed: Set[int] = set()
        remaining = list(range(len(self._units)))

        while remaining:
            layer = [i for i in remaining if set(self._upstream[i]) <= placed]
            if not layer:
                break
            layers.append([self._units[i].name for i in layer])
            placed.update(layer)
            remaining = [i for i in remaining if i not in placed]

        return layers

    def roots(self) -> List[str]:
        """Units without dependencies."""
        return [u.name for i, u in enumerate(self._units) if not self._upstream[i]]

    # ── Export ───────────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, List[Dict[str, str]]]:
        """Adjacency dict: unit name -> upstream edges with conditions."""
        result: Dict[str, List[Dict[str, str]]] = {}
        for idx, unit in enumerate(self._units):
            result[unit.name] = [
                {
                    "unit": self._units[up].name,
                    "condition": self.edge_condition(idx, up).value,
                }
                for up in self._upstream[idx]
            ]
        return result

    def to_dot(self) -> str:
        """Export graph as Graphviz DOT."""
        lines = ["digraph convoy {"]
        lines.append("  rankdir=LR;")
        lines.append("  node [shape=box, style=rounded];")

        for unit in self._units:
            shape = "box" if unit.kind.value == "service" else "ellipse"
            lines.append(f'  "{unit.name}" [shape={shape}];')

        for idx, unit in enumerate(self._units):
            for up in self._upstream[idx]:
                label = self.edge_condition(idx, up).value
                lines.append(f'  "{unit.name}" -> "{self._units[up].name}" [label="{label}"];')

        lines.append("}")
        return "\n".join(lines)

    def __len__(self) -> int:
        return len(self._units)

    def __contains__(self, name: str) -> bool:
        return name in self._index

    def __iter__(self) -> Iterator[Unit]:
        return iter(self._units)

    def __repr__(self) -> str:
        return f"UnitGraph({len(self._units)} units)"
