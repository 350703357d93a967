from pydantic import BaseModel, Field

from catalog.ops.services.tree_model import DepthStatistics, NodeSnapshot, TreeNodeView


class CreateNodeRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    parentId: int | None = Field(None, description="ID of parent node (null for a new root)")
    active: bool = True


class UpdateNodeRequest(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    active: bool | None = None


class NodeResponse(BaseModel):
    id: int
    parentId: int | None
    name: str
    position: int
    depth: int
    path: str
    active: bool
    deleted: bool = False

    @classmethod
    def from_snapshot(cls, node: NodeSnapshot) -> "NodeResponse":
        return cls(
            id=node.id,
            parentId=node.parent_id,
            name=node.name,
            position=node.position,
            depth=node.depth,
            path=node.path,
            active=node.active,
            deleted=node.deleted,
        )


class TreeNodeResponse(NodeResponse):
    children: list["TreeNodeResponse"] = []

    @classmethod
    def from_view(cls, tree: TreeNodeView) -> "TreeNodeResponse":
        node = NodeResponse.from_snapshot(tree.node)
        return cls(**node.model_dump(), children=[cls.from_view(child) for child in tree.children])


class MoveNodeRequest(BaseModel):
    """Request model for moving a node from one parent to another."""

    sourceId: int = Field(..., description="ID of the node to move")
    targetId: int | None = Field(None, description="ID of the target parent node (null for root level)")


class MoveNodeResponse(BaseModel):
    """Response model for node move operation."""

    success: bool = Field(..., description="Whether the move operation was successful")
    message: str = Field(..., description="Status message")
    node: NodeResponse


class ReorderRequest(BaseModel):
    parentId: int | None = Field(None, description="Parent whose children are reordered (null for roots)")
    orderedIds: list[int] = Field(..., description="Every live child id, in the new order")


class BatchStatusRequest(BaseModel):
    nodeIds: list[int] = Field(..., min_length=1)
    active: bool


class BatchStatusResponse(BaseModel):
    updated: int


class DepthStatisticsResponse(BaseModel):
    maxDepth: int
    countByDepth: dict[int, int]
    total: int
    active: int
    rootCount: int

    @classmethod
    def from_statistics(cls, stats: DepthStatistics) -> "DepthStatisticsResponse":
        return cls(
            maxDepth=stats.max_depth,
            countByDepth=stats.count_by_depth,
            total=stats.total,
            active=stats.active,
            rootCount=stats.root_count,
        )


class WarmCacheRequest(BaseModel):
    activeOnly: bool = False
    dryRun: bool = False
    force: bool = Field(False, description="Evict every entry before warming")


class FlushRequest(BaseModel):
    rootIds: list[int] | None = Field(None, description="Root shards to evict (null evicts everything)")
    nodeIds: list[int] | None = Field(None, description="Nodes whose single-node entries to evict")
