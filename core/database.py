from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

# Works with PostgreSQL (default) or SQLite
database = Database(DATABASE_URL)
metadata = sa.MetaData()


media_assets = sa.Table(
    "media_assets",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("episode_id", sa.String(100), nullable=False),
    sa.Column("language_tag", sa.String(35), nullable=False),
    sa.Column("asset_id", sa.String(64), unique=True, nullable=False),
    sa.Column(
        "category",
        sa.String(32),
        sa.CheckConstraint(
            "category IN ('hls', 'thumbnail_hls')",
            name="ck_media_assets_category",
        ),
        nullable=False,
        default="hls",
    ),
    sa.Column("prefix", sa.String(255), nullable=False),
    sa.Column("playlist_key", sa.String(512), nullable=False),
    sa.Column("template_key", sa.String(512), nullable=False),
    sa.Column("segment_count", sa.Integer, nullable=False, default=0),
    # Currently recorded signed playlist URL; replaced on every refresh
    sa.Column("playlist_url", sa.Text, nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.Column("last_refreshed_at", sa.DateTime(timezone=True), nullable=True),
    sa.UniqueConstraint("episode_id", "language_tag", name="uq_media_assets_episode_language"),
    sa.Index("ix_media_assets_last_refreshed_at", "last_refreshed_at"),
)


def create_tables(url: str = DATABASE_URL):
    """
    Create database tables directly using SQLAlchemy metadata.
    Alembic migrations are the supported path for production databases.
    """
    engine = sa.create_engine(url)
    metadata.create_all(engine)
    engine.dispose()


if __name__ == "__main__":
    create_tables()
    print("Database tables created successfully!")
