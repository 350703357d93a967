from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from catalog.lib.db.session import get_session
from catalog.ops.errors import (
    CatalogError,
    CycleDetectedError,
    InvalidPositionsError,
    MaxDepthExceededError,
    NodeHasChildrenError,
    NodeNotFoundError,
    ParentDeletedError,
    ParentNotFoundError,
)
from catalog.ops.services.catalog_service import CatalogService
from catalog.ops.services.tree_service import TreeService

ERROR_STATUS: dict[type[CatalogError], int] = {
    NodeNotFoundError: status.HTTP_404_NOT_FOUND,
    ParentNotFoundError: status.HTTP_404_NOT_FOUND,
    CycleDetectedError: status.HTTP_409_CONFLICT,
    NodeHasChildrenError: status.HTTP_409_CONFLICT,
    ParentDeletedError: status.HTTP_409_CONFLICT,
    MaxDepthExceededError: status.HTTP_400_BAD_REQUEST,
    InvalidPositionsError: status.HTTP_400_BAD_REQUEST,
}


def to_http_error(error: CatalogError) -> HTTPException:
    code = ERROR_STATUS.get(type(error), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=code, detail=str(error))


def get_catalog_service(request: Request) -> CatalogService:
    return request.app.state.catalog_service


def get_tree_service(request: Request, session: AsyncSession = Depends(get_session)) -> TreeService:
    return TreeService(session, notifier=request.app.state.notifier, max_depth=request.app.state.settings.max_depth)
