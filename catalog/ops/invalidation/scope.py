import hashlib
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ScopeMode(str, Enum):
    FULL = "full"
    ROOT_SHARD = "root_shard"
    SINGLE_KEY = "single_key"


@dataclass(frozen=True)
class DebounceUnit:
    """One lock record: the smallest scope that debounces on its own."""

    mode: ScopeMode
    discriminator: str

    @property
    def lock_key(self) -> str:
        return f"lock:{self.mode.value}:{self.discriminator}"


@dataclass(frozen=True)
class InvalidationScope:
    """Which cached data a mutation made stale. Never persisted."""

    mode: ScopeMode
    affected_root_ids: frozenset[int] = field(default_factory=frozenset)
    affected_node_ids: frozenset[int] = field(default_factory=frozenset)

    @classmethod
    def full(cls, node_ids: Iterable[int] = ()) -> "InvalidationScope":
        return cls(ScopeMode.FULL, frozenset(), frozenset(node_ids))

    @classmethod
    def root_shards(cls, root_ids: Iterable[int], node_ids: Iterable[int] = ()) -> "InvalidationScope":
        roots = frozenset(root_ids)
        if not roots:
            return cls.full(node_ids)
        return cls(ScopeMode.ROOT_SHARD, roots, frozenset(node_ids))

    @classmethod
    def single_keys(cls, node_ids: Iterable[int]) -> "InvalidationScope":
        return cls(ScopeMode.SINGLE_KEY, frozenset(), frozenset(node_ids))

    @property
    def debounce_key(self) -> str:
        """Stable hash of the mode and the sorted ids it covers."""
        ids = self.affected_node_ids if self.mode is ScopeMode.SINGLE_KEY else self.affected_root_ids
        material = f"{self.mode.value}:{','.join(str(i) for i in sorted(ids))}"
        return hashlib.sha1(material.encode()).hexdigest()

    def debounce_units(self) -> list[DebounceUnit]:
        """
        Lock records this scope must win before a flush is scheduled.

        Root shards debounce per root so overlapping bursts (a move touching
        roots 1 and 3, then an edit under root 1) collapse into one job per
        root. A full flush has a single global unit; single-key scopes hash
        their node set.
        """
        if self.mode is ScopeMode.ROOT_SHARD:
            return [DebounceUnit(self.mode, str(root_id)) for root_id in sorted(self.affected_root_ids)]
        if self.mode is ScopeMode.FULL:
            return [DebounceUnit(self.mode, "all")]
        return [DebounceUnit(self.mode, self.debounce_key)]

    def narrowed_to(self, units: Iterable[DebounceUnit]) -> "InvalidationScope":
        """The part of this scope covered by ``units`` (the locks this caller acquired)."""
        units = list(units)
        if self.mode is ScopeMode.ROOT_SHARD:
            roots = frozenset(int(unit.discriminator) for unit in units)
            return InvalidationScope(self.mode, roots, self.affected_node_ids)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "affected_root_ids": sorted(self.affected_root_ids),
            "affected_node_ids": sorted(self.affected_node_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InvalidationScope":
        return cls(
            mode=ScopeMode(data["mode"]),
            affected_root_ids=frozenset(int(i) for i in data.get("affected_root_ids", [])),
            affected_node_ids=frozenset(int(i) for i in data.get("affected_node_ids", [])),
        )
