"""
Closed set of node mutations reported by the write path.

Each variant carries typed snapshots: the state after the commit and, where
the change could alter which shard a node belongs to, the state before it.
"""
from dataclasses import dataclass
from enum import Enum

from catalog.ops.services.tree_model import NodeSnapshot


class MutationKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    MOVED = "moved"
    DELETED = "deleted"
    RESTORED = "restored"
    FORCE_DELETED = "force_deleted"
    REORDERED = "reordered"


@dataclass(frozen=True)
class Created:
    node: NodeSnapshot


@dataclass(frozen=True)
class Updated:
    """Content or status edit; ``parent_id`` unchanged."""

    node: NodeSnapshot
    previous: NodeSnapshot | None = None


@dataclass(frozen=True)
class Moved:
    node: NodeSnapshot
    previous: NodeSnapshot

    @property
    def from_parent_id(self) -> int | None:
        return self.previous.parent_id

    @property
    def to_parent_id(self) -> int | None:
        return self.node.parent_id


@dataclass(frozen=True)
class Deleted:
    """Soft delete; the node keeps its path."""

    node: NodeSnapshot


@dataclass(frozen=True)
class Restored:
    node: NodeSnapshot


@dataclass(frozen=True)
class ForceDeleted:
    """Hard delete; the row is gone, only the snapshot remains."""

    node: NodeSnapshot


@dataclass(frozen=True)
class Reordered:
    """Sibling positions rewritten under one parent (None for the root level)."""

    parent_id: int | None
    nodes: tuple[NodeSnapshot, ...]


@dataclass(frozen=True)
class BulkChanged:
    """
    Administrative change over many nodes.

    ``root_ids`` is None when the affected roots are unknown, which forces a
    full flush.
    """

    node_ids: frozenset[int]
    root_ids: frozenset[int] | None = None


Mutation = Created | Updated | Moved | Deleted | Restored | ForceDeleted | Reordered | BulkChanged


def mutation_for(kind: MutationKind, node: NodeSnapshot, previous: NodeSnapshot | None = None) -> Mutation:
    """
    Build the variant for a single-node mutation.

    An update whose parent changed is reported as a move, so callers that only
    know "the row was saved" still get shard-accurate invalidation.
    """
    if kind is MutationKind.CREATED:
        return Created(node)
    if kind in (MutationKind.UPDATED, MutationKind.MOVED):
        if previous is not None and previous.parent_id != node.parent_id:
            return Moved(node, previous)
        if kind is MutationKind.MOVED:
            raise ValueError(f"Move of node {node.id} requires its previous state")
        return Updated(node, previous)
    if kind is MutationKind.DELETED:
        return Deleted(node)
    if kind is MutationKind.RESTORED:
        return Restored(node)
    if kind is MutationKind.FORCE_DELETED:
        return ForceDeleted(node)
    if kind is MutationKind.REORDERED:
        return Reordered(node.parent_id, (node,))
    raise ValueError(f"Unknown mutation kind {kind}")
