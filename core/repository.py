"""
Catalog persistence for published renditions.

One row per (episode, language). A re-upload replaces the row and the old
asset prefix is simply abandoned; asset ids are never reused.
"""

import logging
from datetime import datetime
from typing import List, Optional

import sqlalchemy as sa
from databases import Database

from core.common import utcnow
from core.database import media_assets
from core.models import MediaAsset, MediaAssetKey
from core.retry import with_db_retry

logger = logging.getLogger(__name__)


def _key_clause(key: MediaAssetKey):
    return sa.and_(
        media_assets.c.episode_id == key.episode_id,
        media_assets.c.language_tag == key.language_tag,
    )


class MediaAssetRepository:
    def __init__(self, database: Database):
        self.database = database

    @with_db_retry()
    async def save(self, asset: MediaAsset) -> Optional[MediaAsset]:
        """Record an asset, replacing any previous one for the same key.

        Returns the replaced asset, if there was one.
        """
        async with self.database.transaction():
            row = await self.database.fetch_one(media_assets.select().where(_key_clause(asset.key)))
            previous = MediaAsset.from_row(row) if row else None
            if previous is not None:
                await self.database.execute(media_assets.delete().where(_key_clause(asset.key)))
            await self.database.execute(
                media_assets.insert().values(
                    episode_id=asset.key.episode_id,
                    language_tag=asset.key.language_tag,
                    asset_id=asset.asset_id,
                    category=asset.category.value,
                    prefix=asset.prefix,
                    playlist_key=asset.playlist_key,
                    template_key=asset.template_key,
                    segment_count=asset.segment_count,
                    playlist_url=asset.playlist_url,
                    created_at=asset.created_at,
                    last_refreshed_at=asset.last_refreshed_at,
                )
            )
        if previous is not None and previous.asset_id != asset.asset_id:
            logger.info(f"Replaced asset {previous.asset_id} for {asset.key} with {asset.asset_id}")
        return previous

    @with_db_retry()
    async def get(self, key: MediaAssetKey) -> Optional[MediaAsset]:
        row = await self.database.fetch_one(media_assets.select().where(_key_clause(key)))
        return MediaAsset.from_row(row) if row else None

    @with_db_retry()
    async def list_all(self) -> List[MediaAsset]:
        rows = await self.database.fetch_all(
            media_assets.select().order_by(media_assets.c.episode_id, media_assets.c.language_tag)
        )
        return [MediaAsset.from_row(row) for row in rows]

    @with_db_retry()
    async def record_refresh(
        self,
        key: MediaAssetKey,
        asset_id: str,
        playlist_url: str,
        refreshed_at: Optional[datetime] = None,
    ) -> bool:
        """Store a freshly minted playlist URL for asset_id.

        Returns False if the asset is gone, or if a re-upload replaced it
        while the refresh ran. The URL then points into an abandoned prefix
        and is not recorded.
        """
        refreshed_at = refreshed_at or utcnow()
        async with self.database.transaction():
            current = await self.database.fetch_val(
                sa.select(media_assets.c.asset_id).where(_key_clause(key))
            )
            if current != asset_id:
                if current is not None:
                    logger.info(f"Not recording refresh of {asset_id}: {key} was replaced by {current}")
                return False
            await self.database.execute(
                media_assets.update()
                .where(_key_clause(key))
                .where(media_assets.c.asset_id == asset_id)
                .values(playlist_url=playlist_url, last_refreshed_at=refreshed_at)
            )
        return True

    @with_db_retry()
    async def delete(self, key: MediaAssetKey) -> bool:
        existing = await self.database.fetch_val(
            sa.select(media_assets.c.id).where(_key_clause(key))
        )
        if existing is None:
            return False
        await self.database.execute(media_assets.delete().where(media_assets.c.id == existing))
        return True
