from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, SmallInteger, String, func
from sqlalchemy.orm import Mapped, mapped_column

from catalog.lib.db.base import Base

# SQLite only autoincrements INTEGER PRIMARY KEY columns
NodeId = BigInteger().with_variant(Integer, "sqlite")


class CategoryNode(Base):
    __tablename__ = "category_nodes"
    __table_args__ = (Index("ix_category_nodes_parent_position", "parent_id", "position"),)

    id: Mapped[int] = mapped_column(NodeId, primary_key=True, autoincrement=True)
    parent_id: Mapped[int | None] = mapped_column(
        NodeId, ForeignKey("category_nodes.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    depth: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    path: Mapped[str] = mapped_column(String(1024), nullable=False, default="", index=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def deleted(self) -> bool:
        return self.deleted_at is not None

    def __repr__(self) -> str:
        return f"<CategoryNode(id={self.id}, name={self.name}, parent_id={self.parent_id}, path={self.path})>"
