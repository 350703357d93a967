from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog.ops.entities.category_node import CategoryNode


async def check_database_health(session: AsyncSession) -> dict:
    """Count the node table; a reachable database with a missing table is reported unhealthy."""
    try:
        result = await session.execute(select(func.count()).select_from(CategoryNode))
        return {"database": "healthy", "connected": True, "nodes": result.scalar_one()}
    except Exception as e:
        return {"database": "unhealthy", "connected": False, "error": str(e)}
