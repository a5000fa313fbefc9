"""create_media_assets

Revision ID: 001
Revises:
Create Date: 2026-10-19

Catalog of published HLS renditions, one row per episode and language.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "media_assets",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("episode_id", sa.String(100), nullable=False),
        sa.Column("language_tag", sa.String(35), nullable=False),
        sa.Column("asset_id", sa.String(64), unique=True, nullable=False),
        sa.Column("category", sa.String(32), nullable=False, server_default="hls"),
        sa.Column("prefix", sa.String(255), nullable=False),
        sa.Column("playlist_key", sa.String(512), nullable=False),
        sa.Column("template_key", sa.String(512), nullable=False),
        sa.Column("segment_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("playlist_url", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("last_refreshed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("episode_id", "language_tag", name="uq_media_assets_episode_language"),
        sa.CheckConstraint("category IN ('hls', 'thumbnail_hls')", name="ck_media_assets_category"),
    )
    op.create_index("ix_media_assets_last_refreshed_at", "media_assets", ["last_refreshed_at"])


def downgrade() -> None:
    op.drop_index("ix_media_assets_last_refreshed_at", table_name="media_assets")
    op.drop_table("media_assets")
