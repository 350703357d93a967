from fastapi import APIRouter, Depends, HTTPException, Query, status

from catalog.ops.dependencies import get_catalog_service, get_tree_service, to_http_error
from catalog.ops.errors import CatalogError
from catalog.ops.schemas import (
    BatchStatusRequest,
    BatchStatusResponse,
    CreateNodeRequest,
    DepthStatisticsResponse,
    MoveNodeRequest,
    MoveNodeResponse,
    NodeResponse,
    ReorderRequest,
    TreeNodeResponse,
    UpdateNodeRequest,
)
from catalog.ops.services.catalog_service import CatalogService
from catalog.ops.services.tree_model import NodeSnapshot
from catalog.ops.services.tree_service import CreateNodeCommand, TreeService

router = APIRouter()


def _nodes_or_404(nodes: list[NodeSnapshot] | None, node_id: int) -> list[NodeResponse]:
    if nodes is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Node {node_id} not found")
    return [NodeResponse.from_snapshot(node) for node in nodes]


@router.get("", response_model=list[TreeNodeResponse])
async def get_tree(
    active_only: bool = Query(False, alias="activeOnly"), service: CatalogService = Depends(get_catalog_service)
):
    """Whole forest, roots and children in position order."""
    forest = await service.query_tree(active_only)
    return [TreeNodeResponse.from_view(tree) for tree in forest]


@router.get("/roots/{root_id}", response_model=TreeNodeResponse)
async def get_tree_shard(
    root_id: int,
    active_only: bool = Query(False, alias="activeOnly"),
    service: CatalogService = Depends(get_catalog_service),
):
    tree = await service.query_tree_shard(root_id, active_only)
    if tree is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Root {root_id} not found")
    return TreeNodeResponse.from_view(tree)


@router.get("/nodes/{node_id}/breadcrumbs", response_model=list[NodeResponse])
async def get_breadcrumbs(node_id: int, service: CatalogService = Depends(get_catalog_service)):
    """Root to node, the node included."""
    return _nodes_or_404(await service.query_breadcrumbs(node_id), node_id)


@router.get("/nodes/{node_id}/ancestors", response_model=list[NodeResponse])
async def get_ancestors(node_id: int, service: CatalogService = Depends(get_catalog_service)):
    return _nodes_or_404(await service.query_ancestors(node_id), node_id)


@router.get("/nodes/{node_id}/descendants", response_model=list[NodeResponse])
async def get_descendants(
    node_id: int,
    active_only: bool = Query(False, alias="activeOnly"),
    service: CatalogService = Depends(get_catalog_service),
):
    return _nodes_or_404(await service.query_descendants(node_id, active_only), node_id)


@router.get("/nodes/{node_id}/children", response_model=list[NodeResponse])
async def get_children(
    node_id: int,
    active_only: bool = Query(False, alias="activeOnly"),
    service: CatalogService = Depends(get_catalog_service),
):
    return _nodes_or_404(await service.query_children(node_id, active_only), node_id)


@router.get("/stats/depth", response_model=DepthStatisticsResponse)
async def get_depth_statistics(service: CatalogService = Depends(get_catalog_service)):
    return DepthStatisticsResponse.from_statistics(await service.query_depth_statistics())


@router.post("", response_model=NodeResponse, status_code=status.HTTP_201_CREATED)
async def create_node(request: CreateNodeRequest, service: TreeService = Depends(get_tree_service)):
    """
    Append a new node after the last child of its parent.
    Creates a root node if parentId is null.
    """
    command = CreateNodeCommand(name=request.name, parent_id=request.parentId, active=request.active)
    try:
        return NodeResponse.from_snapshot(await service.create_node(command))
    except CatalogError as e:
        raise to_http_error(e)


@router.patch("/nodes/{node_id}", response_model=NodeResponse)
async def update_node(node_id: int, request: UpdateNodeRequest, service: TreeService = Depends(get_tree_service)):
    try:
        return NodeResponse.from_snapshot(await service.update_node(node_id, name=request.name, active=request.active))
    except CatalogError as e:
        raise to_http_error(e)


@router.post("/move", response_model=MoveNodeResponse)
async def move_node(request: MoveNodeRequest, service: TreeService = Depends(get_tree_service)):
    """Move a node by sourceId under targetId"""
    try:
        node = await service.move_node(request.sourceId, request.targetId)
    except CatalogError as e:
        raise to_http_error(e)
    return MoveNodeResponse(
        success=True,
        message=f"Successfully moved node {request.sourceId} to {'root' if request.targetId is None else f'parent {request.targetId}'}",
        node=NodeResponse.from_snapshot(node),
    )


@router.post("/reorder", response_model=list[NodeResponse])
async def reorder_children(request: ReorderRequest, service: TreeService = Depends(get_tree_service)):
    try:
        nodes = await service.reorder(request.parentId, request.orderedIds)
    except CatalogError as e:
        raise to_http_error(e)
    return [NodeResponse.from_snapshot(node) for node in nodes]


@router.delete("/nodes/{node_id}", response_model=NodeResponse)
async def delete_node(node_id: int, service: TreeService = Depends(get_tree_service)):
    """Soft delete; rejected with 409 while the node has live children."""
    try:
        return NodeResponse.from_snapshot(await service.delete_node(node_id))
    except CatalogError as e:
        raise to_http_error(e)


@router.post("/nodes/{node_id}/restore", response_model=NodeResponse)
async def restore_node(node_id: int, service: TreeService = Depends(get_tree_service)):
    try:
        return NodeResponse.from_snapshot(await service.restore_node(node_id))
    except CatalogError as e:
        raise to_http_error(e)


@router.delete("/nodes/{node_id}/force", response_model=NodeResponse)
async def force_delete_node(node_id: int, service: TreeService = Depends(get_tree_service)):
    try:
        return NodeResponse.from_snapshot(await service.force_delete_node(node_id))
    except CatalogError as e:
        raise to_http_error(e)


@router.post("/status", response_model=BatchStatusResponse)
async def batch_update_status(request: BatchStatusRequest, service: TreeService = Depends(get_tree_service)):
    return BatchStatusResponse(updated=await service.batch_update_status(request.nodeIds, request.active))
