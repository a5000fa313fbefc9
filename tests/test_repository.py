"""Tests for the media asset catalog against SQLite."""

from datetime import datetime, timedelta, timezone

import pytest

from core.enums import AssetCategory
from core.models import MediaAsset, MediaAssetKey

CREATED = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_asset(asset_id, episode="ep1", language="en", category=AssetCategory.EPISODE):
    prefix = f"{category.value}/{asset_id}/"
    return MediaAsset(
        key=MediaAssetKey(episode, language),
        asset_id=asset_id,
        category=category,
        prefix=prefix,
        playlist_key=f"{prefix}playlist.m3u8",
        template_key=f"{prefix}template.m3u8",
        segment_count=6,
        created_at=CREATED,
        playlist_url=f"https://cdn.example.com/{prefix}playlist.m3u8?Expires=1&KeyName=k&Signature=s",
    )


class TestMediaAssetRepository:
    @pytest.mark.asyncio
    async def test_save_and_get(self, catalog):
        asset = make_asset("a1")
        assert await catalog.save(asset) is None

        loaded = await catalog.get(asset.key)
        assert loaded.asset_id == "a1"
        assert loaded.category == AssetCategory.EPISODE
        assert loaded.segment_count == 6
        assert loaded.playlist_url == asset.playlist_url
        assert loaded.created_at == CREATED
        assert loaded.created_at.tzinfo is not None
        assert loaded.last_refreshed_at is None

    @pytest.mark.asyncio
    async def test_get_missing(self, catalog):
        assert await catalog.get(MediaAssetKey("nope", "en")) is None

    @pytest.mark.asyncio
    async def test_save_replaces_same_key(self, catalog):
        await catalog.save(make_asset("a1"))
        previous = await catalog.save(make_asset("a2"))

        assert previous.asset_id == "a1"
        assert (await catalog.get(MediaAssetKey("ep1", "en"))).asset_id == "a2"
        assert len(await catalog.list_all()) == 1

    @pytest.mark.asyncio
    async def test_languages_are_separate_assets(self, catalog):
        await catalog.save(make_asset("a1", language="en"))
        await catalog.save(make_asset("a2", language="fr"))
        await catalog.save(make_asset("t1", episode="ep0", category=AssetCategory.THUMBNAIL))

        assets = await catalog.list_all()
        assert [str(a.key) for a in assets] == ["ep0/en", "ep1/en", "ep1/fr"]
        assert assets[0].category == AssetCategory.THUMBNAIL

    @pytest.mark.asyncio
    async def test_record_refresh(self, catalog):
        asset = make_asset("a1")
        await catalog.save(asset)
        refreshed_at = CREATED + timedelta(minutes=30)

        assert await catalog.record_refresh(asset.key, "a1", "https://cdn.example.com/new", refreshed_at)

        loaded = await catalog.get(asset.key)
        assert loaded.playlist_url == "https://cdn.example.com/new"
        assert loaded.last_refreshed_at == refreshed_at

    @pytest.mark.asyncio
    async def test_record_refresh_for_removed_asset(self, catalog):
        assert not await catalog.record_refresh(MediaAssetKey("gone", "en"), "a1", "https://cdn.example.com/x")

    @pytest.mark.asyncio
    async def test_record_refresh_for_replaced_asset(self, catalog):
        old = make_asset("a1")
        await catalog.save(old)
        replacement = make_asset("a2")
        await catalog.save(replacement)

        assert not await catalog.record_refresh(old.key, "a1", "https://cdn.example.com/old-prefix")

        loaded = await catalog.get(old.key)
        assert loaded.asset_id == "a2"
        assert loaded.playlist_url == replacement.playlist_url

    @pytest.mark.asyncio
    async def test_delete(self, catalog):
        asset = make_asset("a1")
        await catalog.save(asset)
        assert await catalog.delete(asset.key)
        assert not await catalog.delete(asset.key)
        assert await catalog.get(asset.key) is None
