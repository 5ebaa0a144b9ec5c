"""Architectural layers and their emission order.

Layers have a fixed total order.  :class:`DependencyOrderer` turns a set of
layers plus declared layer dependencies into an emission sequence in which no
layer is emitted before a layer it depends on.  The ``cross-layer``
pseudo-layer hosts artifacts that depend on several layers at once (for
example an entity <-> response mapping) so that no two layers ever depend on
each other.
"""

from __future__ import annotations

from collections.abc import Hashable, Iterable, Iterator, Mapping
from enum import Enum
from heapq import heapify, heappop, heappush
from typing import Callable, TypeVar

N = TypeVar("N", bound=Hashable)


class Layer(str, Enum):
    """One tier of the generated architecture, declared in emission order."""

    DOMAIN = "domain"
    APPLICATION = "application"
    DATA_ACCESS = "data-access"
    TRANSPORT = "transport"
    PRESENTATION = "presentation"
    CROSS_LAYER = "cross-layer"
    TESTS = "tests"

    @property
    def rank(self) -> int:
        """Position of the layer in the fixed emission order."""
        return _LAYER_ORDER.index(self)

    @classmethod
    def parse(cls, value: str) -> "Layer":
        """Look up a layer by value, accepting ``_`` for ``-``."""
        try:
            return cls(value.strip().lower().replace("_", "-"))
        except ValueError:
            known = ", ".join(layer.value for layer in cls)
            raise ValueError(f"Unknown layer {value!r} (expected one of: {known})") from None


_LAYER_ORDER: tuple[Layer, ...] = tuple(Layer)


class LayeringViolationError(Exception):
    """Raised when declared layer dependencies cannot be honoured.

    Either a dependency points forward in the fixed order, or the declared
    dependencies form a cycle.  Both are configuration bugs.
    """

    def __init__(
        self,
        message: str,
        *,
        template_id: str = "",
        cycles: Iterable[Iterable[Hashable]] = (),
    ) -> None:
        self.template_id = template_id
        self.cycles: tuple[tuple[Hashable, ...], ...] = tuple(tuple(c) for c in cycles)
        super().__init__(message)


# ---------------------------------------------------------------------------
# Generic deterministic topological ordering
# ---------------------------------------------------------------------------


def topological_order(
    nodes: Iterable[N],
    dependencies: Mapping[N, Iterable[N]],
    *,
    rank: Callable[[N], object],
) -> tuple[N, ...]:
    """Order *nodes* so that each node follows everything it depends on.

    ``dependencies[node]`` lists the nodes that must come first.  Among nodes
    that are ready at the same time, the one with the lowest ``rank`` wins,
    which makes the result deterministic.  Dependencies on nodes outside
    *nodes* are ignored.

    Raises:
        LayeringViolationError: If the dependencies contain a cycle.
    """
    node_set = set(nodes)
    parents: dict[N, set[N]] = {node: set() for node in node_set}
    children: dict[N, set[N]] = {node: set() for node in node_set}
    for node in node_set:
        for dep in dependencies.get(node, ()):
            if dep in node_set and dep != node:
                parents[node].add(dep)
                children[dep].add(node)
            elif dep == node:
                raise LayeringViolationError(
                    f"{_label(node)} depends on itself", cycles=[(node, node)]
                )

    indegree = {node: len(parents[node]) for node in node_set}
    ready = [
        (rank(node), index, node)
        for index, node in enumerate(_stable(node_set, rank))
        if indegree[node] == 0
    ]
    heapify(ready)
    counter = len(node_set)

    order: list[N] = []
    while ready:
        _, _, node = heappop(ready)
        order.append(node)
        for child in _stable(children[node], rank):
            indegree[child] -= 1
            if indegree[child] == 0:
                counter += 1
                heappush(ready, (rank(child), counter, child))

    if len(order) != len(node_set):
        remaining = {node for node in node_set if node not in order}
        cycles = _find_cycles(remaining, parents, rank)
        preview = ", ".join(" -> ".join(_label(n) for n in cycle) for cycle in cycles[:3])
        raise LayeringViolationError(
            f"Layer dependencies contain cycle(s): {preview}", cycles=cycles
        )

    return tuple(order)


def _stable(nodes: Iterable[N], rank: Callable[[N], object]) -> list[N]:
    return sorted(nodes, key=lambda n: (rank(n), _label(n)))


def _label(node: Hashable) -> str:
    return node.value if isinstance(node, Enum) else str(node)


def _find_cycles(
    remaining: set[N],
    parents: Mapping[N, set[N]],
    rank: Callable[[N], object],
) -> list[tuple[N, ...]]:
    """Return closed cycle paths among *remaining* (iterative DFS)."""
    state: dict[N, int] = {}
    stack: list[N] = []
    cycles: dict[tuple[N, ...], None] = {}

    for start in _stable(remaining, rank):
        if state.get(start, 0):
            continue
        state[start] = 1
        stack.append(start)
        frames: list[tuple[N, Iterator[N]]] = [
            (start, iter(_stable(parents[start] & remaining, rank)))
        ]
        while frames:
            node, it = frames[-1]
            nxt = next(it, None)
            if nxt is None:
                frames.pop()
                state[node] = 2
                stack.pop()
                continue
            if state.get(nxt, 0) == 0:
                state[nxt] = 1
                stack.append(nxt)
                frames.append((nxt, iter(_stable(parents[nxt] & remaining, rank))))
            elif state[nxt] == 1:
                cycle = tuple(stack[stack.index(nxt):] + [nxt])
                cycles[cycle] = None
    return list(cycles)


# ---------------------------------------------------------------------------
# DependencyOrderer
# ---------------------------------------------------------------------------


class DependencyOrderer:
    """Orders layers for emission.

    Without declared dependencies the result is simply the fixed layer order.
    Declared dependencies (layer -> layers it reads symbols from) may only
    point backwards in that order; :meth:`check_dependency` enforces this when
    the template catalog is loaded.
    """

    def __init__(self, dependencies: Mapping[Layer, Iterable[Layer]] | None = None) -> None:
        self._dependencies: dict[Layer, frozenset[Layer]] = {
            layer: frozenset(deps) for layer, deps in (dependencies or {}).items()
        }

    @property
    def dependencies(self) -> dict[Layer, frozenset[Layer]]:
        return dict(self._dependencies)

    @staticmethod
    def check_dependency(layer: Layer, required: Layer, *, template_id: str = "") -> None:
        """Reject a dependency of *layer* on *required* unless it points backwards.

        Raises:
            LayeringViolationError: For forward or same-layer references.
        """
        if required.rank < layer.rank:
            return
        where = f"template {template_id!r} " if template_id else ""
        if required is layer:
            raise LayeringViolationError(
                f"{where}in layer {layer.value!r} declares a same-layer dependency; "
                f"move the artifact to the {Layer.CROSS_LAYER.value!r} layer instead",
                template_id=template_id,
            )
        raise LayeringViolationError(
            f"{where}in layer {layer.value!r} requires later layer {required.value!r}",
            template_id=template_id,
        )

    def order(self, layers: Iterable[Layer] | None = None) -> tuple[Layer, ...]:
        """Return *layers* (default: all layers) in emission order.

        Raises:
            LayeringViolationError: If the declared dependencies are cyclic.
        """
        selected = set(layers) if layers is not None else set(Layer)
        return topological_order(selected, self._dependencies, rank=lambda layer: layer.rank)
