"""Category node table with materialized paths

Revision ID: 4c2a9e71b0d3
Revises:
Create Date: 2026-10-18 09:12:31.204118

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "4c2a9e71b0d3"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "category_nodes",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("parent_id", sa.BigInteger(), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("depth", sa.SmallInteger(), nullable=False, server_default="0"),
        sa.Column("path", sa.String(length=1024), nullable=False, server_default=""),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["parent_id"], ["category_nodes.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("depth >= 0", name="depth_not_negative"),
        sa.CheckConstraint("position >= 1", name="position_positive"),
    )

    op.create_index("ix_category_nodes_parent_id", "category_nodes", ["parent_id"], unique=False)
    op.create_index("ix_category_nodes_parent_position", "category_nodes", ["parent_id", "position"], unique=False)
    op.create_index("ix_category_nodes_deleted_at", "category_nodes", ["deleted_at"], unique=False)
    # Pattern ops let postgres answer "path LIKE '/1/7/%'" from the index under any collation
    op.create_index(
        "ix_category_nodes_path",
        "category_nodes",
        ["path"],
        unique=False,
        postgresql_ops={"path": "varchar_pattern_ops"},
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_category_nodes_path", table_name="category_nodes")
    op.drop_index("ix_category_nodes_deleted_at", table_name="category_nodes")
    op.drop_index("ix_category_nodes_parent_position", table_name="category_nodes")
    op.drop_index("ix_category_nodes_parent_id", table_name="category_nodes")
    op.drop_table("category_nodes")
