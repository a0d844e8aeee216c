"""Dependency resolution.

Computes the ordered transitive closure of a package version: every
dependency appears once, dependencies before dependents, root last.

Ordering among versions that are ready at the same time is deterministic:
deeper versions (further from the root) load first, then by name, then by
version. Depth is the length of the shortest path from the root.
"""

from __future__ import annotations

import heapq
import logging
from collections import deque
from typing import Iterable

from h5pregistry.registry.errors import DependencyCycleSuspected, PackageNotFound
from h5pregistry.registry.models import EdgeType, LoadItem, PackageVersion
from h5pregistry.registry.store import PackageStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 20
DEFAULT_EDGE_TYPES = frozenset({EdgeType.REQUIRED_AT_LOAD})


def collect_closure(
    root_id: int,
    adjacency: dict[int, list[int]],
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> dict[int, int]:
    """Breadth-first closure from root_id.

    Returns:
        Map of reachable id -> depth (root at 0)

    Raises:
        DependencyCycleSuspected: If a node would sit deeper than max_depth
    """
    depths = {root_id: 0}
    queue = deque([root_id])
    while queue:
        current = queue.popleft()
        depth = depths[current]
        for dep_id in adjacency.get(current, ()):
            if dep_id in depths:
                continue
            if depth + 1 > max_depth:
                raise DependencyCycleSuspected(
                    f"Dependency chain deeper than {max_depth} levels"
                )
            depths[dep_id] = depth + 1
            queue.append(dep_id)
    return depths


def order_dependencies(
    root_id: int,
    adjacency: dict[int, list[int]],
    packages: dict[int, PackageVersion],
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> list[PackageVersion]:
    """Topologically order the closure of root_id.

    Pure function over an adjacency map (from_id -> [to_id]) and the
    package rows of every reachable id.

    Raises:
        DependencyCycleSuspected: On depth overflow or a cycle
        PackageNotFound: If an edge points at a missing row
    """
    depths = collect_closure(root_id, adjacency, max_depth)
    missing = [i for i in depths if i not in packages]
    if missing:
        raise PackageNotFound(f"Dependency rows missing for ids {sorted(missing)}")

    # Edges inside the closure, reversed: a node is ready once all of its
    # dependencies have been emitted.
    remaining = {node: 0 for node in depths}
    dependents: dict[int, list[int]] = {node: [] for node in depths}
    for node in depths:
        for dep_id in set(adjacency.get(node, ())):
            remaining[node] += 1
            dependents[dep_id].append(node)

    def heap_key(node: int) -> tuple:
        pkg = packages[node]
        return (-depths[node], pkg.name, pkg.version, node)

    ready = [heap_key(node) for node, count in remaining.items() if count == 0]
    heapq.heapify(ready)

    ordered: list[PackageVersion] = []
    while ready:
        *_, node = heapq.heappop(ready)
        ordered.append(packages[node])
        for parent in dependents[node]:
            remaining[parent] -= 1
            if remaining[parent] == 0:
                heapq.heappush(ready, heap_key(parent))

    if len(ordered) != len(depths):
        stuck = sorted(
            str(packages[node].identity) for node, count in remaining.items() if count > 0
        )
        raise DependencyCycleSuspected(
            f"Dependency cycle among: {', '.join(stuck)}",
            str(packages[root_id].identity),
        )
    return ordered


class DependencyResolver:
    """Resolves package versions against the stored dependency graph.

    Reads the adjacency view and rows on one fresh connection per call; it
    never writes and takes no locks.

    Usage:
        resolver = DependencyResolver(store, max_depth=20)
        ordered = resolver.resolve(package_id, {EdgeType.REQUIRED_AT_LOAD})
    """

    def __init__(
        self,
        store: PackageStore,
        max_depth: int = DEFAULT_MAX_DEPTH,
        asset_base_url: str = "/api/v1/libraries",
    ):
        self.store = store
        self.max_depth = max_depth
        self.asset_base_url = asset_base_url.rstrip("/")

    def resolve(
        self,
        root_id: int,
        edge_types: Iterable[EdgeType] | None = None,
    ) -> list[PackageVersion]:
        """Ordered transitive closure of root_id, root last.

        Raises:
            PackageNotFound: If root_id does not exist
            DependencyCycleSuspected: On depth overflow or a cycle
        """
        edge_types = frozenset(edge_types or DEFAULT_EDGE_TYPES)
        with self.store.session() as s:
            root = s.get_by_id(root_id)
            if root is None:
                raise PackageNotFound(f"No package version with id {root_id}")
            adjacency = s.edge_map(edge_types)
            reachable = collect_closure(root_id, adjacency, self.max_depth)
            packages = s.get_many(reachable)

        try:
            return order_dependencies(root_id, adjacency, packages, self.max_depth)
        except DependencyCycleSuspected as e:
            logger.warning(f"Resolution of {root.identity} failed: {e}")
            raise

    def load_manifest(
        self,
        root_id: int,
        edge_types: Iterable[EdgeType] | None = None,
    ) -> list[LoadItem]:
        """Resolve and attach blob refs and preloaded asset URLs."""
        items = []
        for package in self.resolve(root_id, edge_types):
            base = f"{self.asset_base_url}/{package.identity.dir_name}"
            items.append(
                LoadItem(
                    package=package,
                    archive_ref=package.archive_ref,
                    extracted_root=package.extracted_root,
                    js=[f"{base}/{path}" for path in _asset_paths(package.metadata, "preloadedJs")],
                    css=[f"{base}/{path}" for path in _asset_paths(package.metadata, "preloadedCss")],
                )
            )
        return items


def _asset_paths(metadata: dict, key: str) -> list[str]:
    entries = metadata.get(key)
    if not isinstance(entries, list):
        return []
    return [e["path"] for e in entries if isinstance(e, dict) and isinstance(e.get("path"), str)]
