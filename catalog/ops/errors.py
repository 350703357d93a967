"""
Error taxonomy for the category tree.

Expected absences (an unknown node id on a read) are not errors: queries
return ``None``. Exceptions are reserved for invariant violations on the write
path, corrupt stored data and backend failures.
"""


class CatalogError(Exception):
    """Base class for all catalog errors."""


class CycleDetectedError(CatalogError):
    def __init__(self, node_id: int, parent_id: int):
        super().__init__(f"Cannot move node {node_id} under its own descendant {parent_id}")
        self.node_id = node_id
        self.parent_id = parent_id


class NodeNotFoundError(CatalogError):
    def __init__(self, node_id: int):
        super().__init__(f"Node {node_id} not found")
        self.node_id = node_id


class ParentNotFoundError(CatalogError):
    def __init__(self, parent_id: int):
        super().__init__(f"Parent node {parent_id} not found")
        self.parent_id = parent_id


class ParentDeletedError(CatalogError):
    def __init__(self, node_id: int | None, parent_id: int):
        subject = f"Node {node_id}" if node_id is not None else "A new node"
        super().__init__(f"{subject} cannot be attached to deleted parent {parent_id}")
        self.node_id = node_id
        self.parent_id = parent_id


class NodeHasChildrenError(CatalogError):
    def __init__(self, node_id: int, child_count: int):
        super().__init__(f"Node {node_id} still has {child_count} child node(s)")
        self.node_id = node_id
        self.child_count = child_count


class MaxDepthExceededError(CatalogError):
    def __init__(self, depth: int, max_depth: int):
        super().__init__(f"Tree depth {depth} would exceed maximum supported depth of {max_depth}")
        self.depth = depth
        self.max_depth = max_depth


class InvalidPositionsError(CatalogError):
    pass


class MalformedPathError(CatalogError):
    def __init__(self, path: str | None, reason: str = "malformed"):
        super().__init__(f"Materialized path {path!r} is {reason}")
        self.path = path


class CacheBackendUnavailableError(CatalogError):
    """The shared store could not be reached. Callers degrade instead of failing."""


class FlushJobError(CatalogError):
    """A flush job exhausted its attempts. The last attempt's error is the cause."""

    def __init__(self, job_id: str, attempts: int):
        super().__init__(f"Flush job {job_id} failed after {attempts} attempts")
        self.job_id = job_id
        self.attempts = attempts
