"""
Materialized-path tree model.

Every node stores the ids of its ancestors, root first, as a slash separated
path ending with its own id:

    root 1            path="/1"        depth=0
    child 7 of 1      path="/1/7"      depth=1
    child 42 of 7     path="/1/7/42"   depth=2

The path gives O(1) root lookup (first segment), ancestor lists without
recursion (all segments but the last) and descendant queries with a single
prefix match (``path LIKE '/1/7/%'``).
"""

from collections.abc import Iterable, Iterator
from dataclasses import asdict, dataclass, field
from typing import Any

from catalog.ops.entities.category_node import CategoryNode
from catalog.ops.errors import CycleDetectedError, MalformedPathError

PATH_SEPARATOR = "/"


def build_path(parent_path: str | None, node_id: int) -> str:
    """Path of a node whose parent has ``parent_path`` (None for roots)."""
    return f"{parent_path or ''}{PATH_SEPARATOR}{node_id}"


def parse_path(path: str | None) -> list[int]:
    """Split a path into ancestor ids, root first, the node itself last."""
    if not path or not path.startswith(PATH_SEPARATOR):
        raise MalformedPathError(path, "empty or not absolute")

    segments = path[1:].split(PATH_SEPARATOR)
    ids = []
    for segment in segments:
        if not segment.isdigit():
            raise MalformedPathError(path, f"invalid segment {segment!r}")
        ids.append(int(segment))
    return ids


def root_id_of(path: str | None) -> int:
    return parse_path(path)[0]


def depth_of(path: str | None) -> int:
    return len(parse_path(path)) - 1


def descendant_prefix(path: str) -> str:
    """LIKE prefix that matches strict descendants only (``/1/7/`` never matches ``/1/70``)."""
    return f"{path}{PATH_SEPARATOR}"


def is_ancestor_path(ancestor_path: str, path: str) -> bool:
    return path.startswith(descendant_prefix(ancestor_path))


def rebase_path(path: str, old_prefix: str, new_prefix: str) -> str:
    """Replace the leading ``old_prefix`` of a descendant path with ``new_prefix``."""
    if path != old_prefix and not is_ancestor_path(old_prefix, path):
        raise MalformedPathError(path, f"not under {old_prefix!r}")
    return new_prefix + path[len(old_prefix) :]


def dense_positions(ordered_ids: Iterable[int]) -> dict[int, int]:
    """Positions 1..n for sibling ids in the given order."""
    return {node_id: index for index, node_id in enumerate(ordered_ids, start=1)}


@dataclass(frozen=True)
class NodeSnapshot:
    """Immutable copy of a stored node, safe to cache and to pass across tasks."""

    id: int
    parent_id: int | None
    name: str
    position: int
    depth: int
    path: str
    active: bool = True
    deleted: bool = False

    @classmethod
    def from_entity(cls, node: CategoryNode) -> "NodeSnapshot":
        return cls(
            id=node.id,
            parent_id=node.parent_id,
            name=node.name,
            position=node.position,
            depth=node.depth,
            path=node.path,
            active=node.active,
            deleted=node.deleted_at is not None,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NodeSnapshot":
        return cls(
            id=int(data["id"]),
            parent_id=int(data["parent_id"]) if data.get("parent_id") is not None else None,
            name=data["name"],
            position=int(data["position"]),
            depth=int(data["depth"]),
            path=data["path"],
            active=bool(data.get("active", True)),
            deleted=bool(data.get("deleted", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    @property
    def path_ids(self) -> list[int]:
        return parse_path(self.path)

    @property
    def ancestor_ids(self) -> list[int]:
        return self.path_ids[:-1]

    @property
    def root_id(self) -> int:
        return self.path_ids[0]


@dataclass
class TreeNodeView:
    """A node with its children attached, as returned by tree builds."""

    node: NodeSnapshot
    children: list["TreeNodeView"] = field(default_factory=list)

    @property
    def id(self) -> int:
        return self.node.id

    def walk(self) -> Iterator[NodeSnapshot]:
        """Pre-order traversal of this subtree."""
        stack = [self]
        while stack:
            current = stack.pop()
            yield current.node
            stack.extend(reversed(current.children))

    def to_dict(self) -> dict[str, Any]:
        data = self.node.to_dict()
        data["children"] = [child.to_dict() for child in self.children]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TreeNodeView":
        return cls(
            node=NodeSnapshot.from_dict(data),
            children=[cls.from_dict(child) for child in data.get("children", [])],
        )


def count_nodes(forest: Iterable[TreeNodeView]) -> int:
    return sum(1 for tree in forest for _ in tree.walk())


@dataclass(frozen=True)
class DepthStatistics:
    max_depth: int
    count_by_depth: dict[int, int]
    total: int = 0
    active: int = 0
    root_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_depth": self.max_depth,
            # JSON object keys are strings
            "count_by_depth": {str(depth): count for depth, count in sorted(self.count_by_depth.items())},
            "total": self.total,
            "active": self.active,
            "root_count": self.root_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DepthStatistics":
        return cls(
            max_depth=int(data["max_depth"]),
            count_by_depth={int(depth): int(count) for depth, count in data["count_by_depth"].items()},
            total=int(data.get("total", 0)),
            active=int(data.get("active", 0)),
            root_count=int(data.get("root_count", 0)),
        )


def ensure_not_descendant(node: NodeSnapshot, candidate_parent: NodeSnapshot | None) -> None:
    """
    Reject a re-parenting that would make ``node`` its own ancestor.

    The candidate is invalid when it is the node itself or when its path lies
    under the node's path. Moving to the root level (no parent) is always
    cycle-free.
    """
    if candidate_parent is None:
        return
    if candidate_parent.id == node.id or is_ancestor_path(node.path, candidate_parent.path):
        raise CycleDetectedError(node.id, candidate_parent.id)


def find_invariant_violations(nodes: Iterable[NodeSnapshot]) -> list[str]:
    """
    Check a whole forest against the structural invariants.

    Returns human readable violations; an empty list means the forest is
    consistent.
    """
    by_id = {node.id: node for node in nodes}
    violations = []
    siblings: dict[int | None, list[int]] = {}

    for node in by_id.values():
        if (node.depth == 0) != (node.parent_id is None):
            violations.append(f"node {node.id}: depth {node.depth} disagrees with parent {node.parent_id}")

        parent = by_id.get(node.parent_id) if node.parent_id is not None else None
        if node.parent_id is not None and parent is None:
            violations.append(f"node {node.id}: parent {node.parent_id} missing")
            continue

        expected_path = build_path(parent.path if parent else None, node.id)
        if node.path != expected_path:
            violations.append(f"node {node.id}: path {node.path!r} != {expected_path!r}")
        elif node.depth != depth_of(node.path):
            violations.append(f"node {node.id}: depth {node.depth} != path depth {depth_of(node.path)}")

        if parent is not None and parent.deleted and not node.deleted:
            violations.append(f"node {node.id}: live child of deleted parent {parent.id}")

        if not node.deleted:
            siblings.setdefault(node.parent_id, []).append(node.position)

    for parent_id, positions in siblings.items():
        if sorted(positions) != list(range(1, len(positions) + 1)):
            violations.append(f"children of {parent_id}: positions {sorted(positions)} are not 1..{len(positions)}")

    return violations


def rebuild_paths(links: Iterable[tuple[int, int | None]]) -> tuple[dict[int, str], list[int]]:
    """
    Recompute every path from ``(id, parent_id)`` links alone.

    Walks down from the roots, so a node gets a path only when its whole
    parent chain reaches a root. Returns the paths by id and, sorted, the ids
    that could not be placed: a missing parent somewhere up the chain or a
    parent cycle.
    """
    children: dict[int | None, list[int]] = {}
    ids = set()
    for node_id, parent_id in links:
        ids.add(node_id)
        children.setdefault(parent_id, []).append(node_id)

    paths: dict[int, str] = {}
    pending = [(root_id, None) for root_id in children.get(None, [])]
    while pending:
        node_id, parent_path = pending.pop()
        path = build_path(parent_path, node_id)
        paths[node_id] = path
        pending.extend((child_id, path) for child_id in children.get(node_id, []))

    return paths, sorted(ids - paths.keys())
