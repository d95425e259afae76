"""
Dependency graph over service names.
"""

from typing import Dict, List, Optional

from ..errors import CycleError, ManifestError


def dependency_graph(manifest) -> Dict[str, List[str]]:
    """Map each service to the services it depends on."""
    return {name: list(svc.depends_on) for name, svc in manifest.services.items()}


def find_cycle(graph: Dict[str, List[str]]) -> Optional[List[str]]:
    """
    Return one dependency cycle as a closed path (first == last), or None.

    Unknown dependency names are ignored here; they are reported by
    validation.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color = {node: WHITE for node in graph}
    stack: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        color[node] = GREY
        stack.append(node)
        for dep in graph.get(node, []):
            if dep not in color:
                continue
            if color[dep] == GREY:
                return stack[stack.index(dep):] + [dep]
            if color[dep] == WHITE:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        color[node] = BLACK
        return None

    for node in sorted(graph):
        if color[node] == WHITE:
            found = visit(node)
            if found:
                return found
    return None


def plan_batches(manifest) -> List[List[str]]:
    """
    Group services into start batches (Kahn's algorithm).

    Every service in batch N depends only on services in batches < N, so
    members of one batch may start concurrently. Batch members are sorted
    by name to keep plans deterministic.

    Raises:
        ManifestError: If a dependency names an undeclared service
        CycleError: If the graph has a cycle
    """
    graph = dependency_graph(manifest)

    for name, deps in graph.items():
        for dep in deps:
            if dep not in graph:
                raise ManifestError(f"Service '{name}' depends on undeclared service '{dep}'")
            if dep == name:
                raise CycleError([name, name])

    remaining = {name: set(deps) for name, deps in graph.items()}
    batches: List[List[str]] = []

    while remaining:
        ready = sorted(name for name, deps in remaining.items() if not deps)
        if not ready:
            cycle = find_cycle({n: list(d) for n, d in remaining.items()})
            raise CycleError(cycle or sorted(remaining))
        batches.append(ready)
        for name in ready:
            del remaining[name]
        for deps in remaining.values():
            deps.difference_update(ready)

    return batches


def start_order(manifest) -> List[str]:
    """Flattened batch order."""
    return [name for batch in plan_batches(manifest) for name in batch]
