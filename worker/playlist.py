"""
Playlist rewriter.

Turns the immutable template playlist of an asset (bare segment filenames,
exactly as the encoder wrote them) into a playable playlist in which every
segment reference is a freshly signed URL, and publishes it over the
canonical playlist key.

Rewrites always start from the template, so running one twice yields the
same structure with only the signatures and expiries changed. Publishing
writes to a temporary key, reads it back, then swaps it over the
canonical key by server-side copy; a failed rewrite leaves the previous
playlist in place.
"""

import logging
import re
import uuid
from typing import Dict, List, Optional
from urllib.parse import unquote, urlparse

from config import PLAYLIST_CACHE_CONTROL, READ_URL_TTL, THUMBNAIL_URL_TTL
from core.enums import AssetCategory, GrantAction
from core.errors import ObjectNotFoundError, RewriteRaceError, StoreError
from core.models import RewriteResult
from storage.object_store import (
    ObjectStore,
    content_type_for,
    prefix_of,
    template_key_for,
)
from storage.signing import UrlSigner

logger = logging.getLogger(__name__)

# A playlist line that is exactly a bare segment filename
BARE_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_.\-]+\.ts$")


def read_ttl_for(category: AssetCategory) -> int:
    if AssetCategory(category) == AssetCategory.THUMBNAIL:
        return THUMBNAIL_URL_TTL
    return READ_URL_TTL


def find_segment_references(playlist_text: str) -> List[str]:
    """Bare segment filenames referenced by a playlist, in order."""
    return [line.strip() for line in playlist_text.splitlines() if BARE_SEGMENT_RE.match(line.strip())]


def rewrite_playlist_text(template_text: str, signed_urls: Dict[str, str]) -> str:
    """
    Replace every bare segment line of template_text with its signed URL.

    Tags, durations and the end marker are kept verbatim.

    Raises:
        RewriteRaceError: The template has no bare references, or one of
            them has no signed URL
    """
    references = find_segment_references(template_text)
    if not references:
        raise RewriteRaceError("Playlist has no bare segment references to rewrite")
    missing = [name for name in references if name not in signed_urls]
    if missing:
        raise RewriteRaceError(f"No signed URL for segments: {', '.join(missing[:5])}")

    lines = []
    for line in template_text.splitlines():
        stripped = line.strip()
        if BARE_SEGMENT_RE.match(stripped):
            lines.append(signed_urls[stripped])
        else:
            lines.append(line)
    return "\n".join(lines) + "\n"


def recover_template(playlist_text: str) -> str:
    """
    Rebuild a template from an already-signed playlist by reducing each
    segment URL to the filename at the end of its path.

    Only used for assets published before templates were stored. Assumes
    segment filenames are unique within the asset, which holds for
    encoder-generated names.
    """
    lines = []
    for line in playlist_text.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("#") and "://" in stripped:
            name = unquote(urlparse(stripped).path.rsplit("/", 1)[-1])
            if BARE_SEGMENT_RE.match(name):
                lines.append(name)
                continue
        lines.append(line)
    return "\n".join(lines) + "\n"


class PlaylistRewriter:
    def __init__(self, store: ObjectStore, signer: UrlSigner, read_ttl: int = READ_URL_TTL):
        self.store = store
        self.signer = signer
        self.read_ttl = read_ttl

    async def rewrite(self, playlist_key: str, ttl_seconds: Optional[int] = None) -> RewriteResult:
        """
        Sign every segment of the asset owning playlist_key, publish the
        rewritten playlist, and return it with a signed playlist URL.

        Raises:
            RewriteRaceError: Segment listing and template disagree; nothing is written
            StoreError: Store failure after retries
            SigningConfigError: Signer is not usable
        """
        ttl = ttl_seconds or self.read_ttl
        prefix = prefix_of(playlist_key)

        keys = await self.store.list_by_prefix(prefix)
        segment_keys = {key.rsplit("/", 1)[-1]: key for key in keys if key.endswith(".ts")}
        if not segment_keys:
            raise RewriteRaceError(f"No segments found under {prefix}")

        template_text = await self._load_template(playlist_key)
        references = find_segment_references(template_text)
        if not references:
            raise RewriteRaceError(f"Template for {playlist_key} has no bare segment references")
        missing = [name for name in references if name not in segment_keys]
        if missing:
            raise RewriteRaceError(
                f"Template for {playlist_key} references {len(missing)} segment(s) missing from storage"
            )

        signed_urls = {
            name: self.signer.sign(segment_keys[name], ttl, GrantAction.READ).url for name in references
        }
        text = rewrite_playlist_text(template_text, signed_urls)
        await self._publish(playlist_key, text)

        grant = self.signer.sign(playlist_key, ttl, GrantAction.READ)
        logger.info(f"Rewrote {playlist_key} with {len(references)} signed segments")
        return RewriteResult(text=text, playlist_grant=grant, segment_count=len(references))

    async def _load_template(self, playlist_key: str) -> str:
        template_key = template_key_for(prefix_of(playlist_key))
        try:
            return (await self.store.get_object(template_key)).decode("utf-8")
        except ObjectNotFoundError:
            pass

        # Legacy asset: derive the template from the live playlist and keep it
        current = (await self.store.get_object(playlist_key)).decode("utf-8")
        template_text = recover_template(current)
        if not find_segment_references(template_text):
            raise RewriteRaceError(f"Cannot recover a template from {playlist_key}")
        logger.warning(f"No template for {playlist_key}, recovered one from the live playlist")
        await self.store.put_object(template_key, template_text.encode("utf-8"), content_type_for(template_key))
        return template_text

    async def _publish(self, playlist_key: str, text: str) -> None:
        data = text.encode("utf-8")
        temp_key = f"{playlist_key}.{uuid.uuid4().hex}.tmp"
        try:
            await self.store.put_object(temp_key, data, content_type_for(playlist_key), PLAYLIST_CACHE_CONTROL)
            written = await self.store.get_object(temp_key)
            if written != data:
                raise StoreError(f"Verification of rewritten playlist {playlist_key} failed")
            await self.store.copy_object(
                temp_key,
                playlist_key,
                content_type=content_type_for(playlist_key),
                cache_control=PLAYLIST_CACHE_CONTROL,
            )
        finally:
            try:
                await self.store.delete_object(temp_key)
            except StoreError as e:
                logger.warning(f"Could not remove temporary playlist {temp_key}: {e}")
