"""
Signed URL issuer.

Mints time-limited URLs for objects in the store. Two schemes:

- CdnUrlSigner: CDN-style signed URLs. The full URL including
  ``Expires`` and ``KeyName`` query parameters is signed with HMAC-SHA1
  over a base64url-encoded key, and the base64url signature is appended
  as ``Signature``. Read grants only.
- S3UrlSigner: SigV4 presigned GET (read) and PUT (write) URLs from boto3.

Every call returns a fresh grant. Missing key material or credentials
raise SigningConfigError, which is fatal and never retried.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import time
from abc import ABC, abstractmethod
from calendar import timegm
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import parse_qs, quote, urlparse

import botocore.exceptions

from core.enums import GrantAction
from core.errors import SigningConfigError
from core.models import SignedUrlGrant
from storage.object_store import content_type_for, normalize_key

logger = logging.getLogger(__name__)

# SigV4 presigned URLs cannot outlive seven days
MAX_PRESIGN_TTL = 7 * 24 * 3600


def _b64url_decode(value: str) -> bytes:
    padded = value.strip() + "=" * (-len(value.strip()) % 4)
    return base64.urlsafe_b64decode(padded)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def parse_signed_url_expiry(url: str) -> Optional[int]:
    """
    Extract the expiry (epoch seconds) embedded in a signed URL.

    Understands CDN ``Expires=``, S3 ``X-Amz-Date`` + ``X-Amz-Expires`` and
    GCS ``X-Goog-Date`` + ``X-Goog-Expires``. Returns None when the URL
    carries no recognizable expiry.
    """
    if not url:
        return None
    try:
        params = parse_qs(urlparse(url).query)
    except ValueError:
        return None

    def first(name: str) -> Optional[str]:
        values = params.get(name)
        return values[0] if values else None

    try:
        expires = first("Expires")
        if expires is not None:
            return int(expires)
        for date_param, expires_param in (
            ("X-Amz-Date", "X-Amz-Expires"),
            ("X-Goog-Date", "X-Goog-Expires"),
        ):
            signed_at = first(date_param)
            lifetime = first(expires_param)
            if signed_at and lifetime:
                issued = datetime.strptime(signed_at, "%Y%m%dT%H%M%SZ")
                return timegm(issued.timetuple()) + int(lifetime)
    except ValueError:
        logger.debug("Unparseable expiry in signed URL")
    return None


def is_url_stale(url: Optional[str], buffer_seconds: float, now: Optional[float] = None) -> bool:
    """True when the URL expires within buffer_seconds, or its expiry is unknown."""
    expires_at = parse_signed_url_expiry(url) if url else None
    if expires_at is None:
        return True
    now = time.time() if now is None else now
    return now + buffer_seconds >= expires_at


class UrlSigner(ABC):
    def __init__(
        self,
        read_ttl: int,
        write_ttl: int,
        clock: Callable[[], float] = time.time,
    ):
        self.read_ttl = read_ttl
        self.write_ttl = write_ttl
        self.clock = clock

    def _resolve_ttl(self, ttl_seconds: Optional[int], action: GrantAction) -> int:
        if ttl_seconds is None:
            ttl_seconds = self.read_ttl if action == GrantAction.READ else self.write_ttl
        ttl_seconds = int(ttl_seconds)
        if ttl_seconds <= 0:
            raise ValueError(f"TTL must be positive, got {ttl_seconds}")
        return ttl_seconds

    @abstractmethod
    def sign(
        self,
        key: str,
        ttl_seconds: Optional[int] = None,
        action: GrantAction = GrantAction.READ,
    ) -> SignedUrlGrant:
        """Mint a grant for key valid for ttl_seconds from now."""


class CdnUrlSigner(UrlSigner):
    """HMAC-SHA1 signed CDN URLs (Expires / KeyName / Signature)."""

    def __init__(
        self,
        base_url: str,
        key_name: str,
        key_secret: str,
        read_ttl: int = 3600,
        write_ttl: int = 900,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(read_ttl, write_ttl, clock)
        self.base_url = (base_url or "").rstrip("/")
        self.key_name = key_name
        self._key_secret = key_secret

    def __repr__(self) -> str:
        return f"CdnUrlSigner(base_url={self.base_url}, key_name={self.key_name})"

    def _key_bytes(self) -> bytes:
        if not self.base_url or not self.key_name or not self._key_secret:
            raise SigningConfigError(
                "CDN signing requires VODPIPE_CDN_BASE_URL, VODPIPE_CDN_KEY_NAME and VODPIPE_CDN_KEY_SECRET"
            )
        try:
            key = _b64url_decode(self._key_secret)
        except (binascii.Error, ValueError) as e:
            raise SigningConfigError(f"CDN key secret is not valid base64url: {e}") from e
        if not key:
            raise SigningConfigError("CDN key secret decodes to an empty key")
        return key

    def _signature(self, url_to_sign: str, key: bytes) -> str:
        digest = hmac.new(key, url_to_sign.encode("utf-8"), hashlib.sha1).digest()
        return _b64url_encode(digest)

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{quote(normalize_key(key), safe='/')}"

    def sign(self, key, ttl_seconds=None, action=GrantAction.READ) -> SignedUrlGrant:
        if action != GrantAction.READ:
            raise SigningConfigError("CDN signer only issues read grants; configure the s3 signer for uploads")
        signing_key = self._key_bytes()
        ttl = self._resolve_ttl(ttl_seconds, action)
        expires_at = int(self.clock()) + ttl

        full_url = self.url_for(key)
        sep = "&" if "?" in full_url else "?"
        url_to_sign = f"{full_url}{sep}Expires={expires_at}&KeyName={quote(self.key_name, safe='')}"
        url = f"{url_to_sign}&Signature={self._signature(url_to_sign, signing_key)}"
        return SignedUrlGrant(key=normalize_key(key), url=url, expires_at=expires_at, action=action)

    def verify(self, url: str, now: Optional[float] = None) -> bool:
        """Check a URL's signature and that it has not expired."""
        signed_part, marker, signature = url.rpartition("&Signature=")
        if not marker or not signature:
            return False
        expected = self._signature(signed_part, self._key_bytes())
        if not hmac.compare_digest(expected, signature):
            return False
        expires_at = parse_signed_url_expiry(url)
        now = self.clock() if now is None else now
        return expires_at is not None and now < expires_at


class S3UrlSigner(UrlSigner):
    """SigV4 presigned URLs; shares the boto3 client of the object store."""

    def __init__(
        self,
        client,
        bucket: str,
        read_ttl: int = 3600,
        write_ttl: int = 900,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(read_ttl, write_ttl, clock)
        self.client = client
        self.bucket = bucket

    def __repr__(self) -> str:
        return f"S3UrlSigner(bucket={self.bucket})"

    def sign(self, key, ttl_seconds=None, action=GrantAction.READ) -> SignedUrlGrant:
        k = normalize_key(key)
        ttl = self._resolve_ttl(ttl_seconds, action)
        if ttl > MAX_PRESIGN_TTL:
            raise ValueError(f"Presigned URLs cannot exceed {MAX_PRESIGN_TTL}s, got {ttl}")

        params = {"Bucket": self.bucket, "Key": k}
        if action == GrantAction.WRITE:
            params["ContentType"] = content_type_for(k)
            client_method, http_method = "put_object", "PUT"
        else:
            client_method, http_method = "get_object", "GET"

        issued_at = int(self.clock())
        try:
            url = self.client.generate_presigned_url(
                ClientMethod=client_method,
                Params=params,
                ExpiresIn=ttl,
                HttpMethod=http_method,
            )
        except botocore.exceptions.NoCredentialsError as e:
            raise SigningConfigError(f"No credentials available to presign {k}") from e
        except botocore.exceptions.BotoCoreError as e:
            raise SigningConfigError(f"Failed to presign {k}: {e}") from e

        expires_at = parse_signed_url_expiry(url) or issued_at + ttl
        return SignedUrlGrant(key=k, url=url, expires_at=expires_at, action=action)


def create_signer(store=None) -> UrlSigner:
    """Build the configured signer. The s3 signer reuses the store's client."""
    from config import (
        CDN_BASE_URL,
        CDN_KEY_NAME,
        CDN_KEY_SECRET,
        READ_URL_TTL,
        SIGNER_BACKEND,
        WRITE_URL_TTL,
    )

    if SIGNER_BACKEND == "cdn":
        return CdnUrlSigner(
            CDN_BASE_URL,
            CDN_KEY_NAME,
            CDN_KEY_SECRET,
            read_ttl=READ_URL_TTL,
            write_ttl=WRITE_URL_TTL,
        )
    if SIGNER_BACKEND != "s3":
        raise ValueError(f"Unknown signer backend: {SIGNER_BACKEND}")
    client = getattr(store, "client", None)
    bucket = getattr(store, "bucket", None)
    if client is None or not bucket:
        raise SigningConfigError("The s3 signer requires the s3 storage backend")
    return S3UrlSigner(client, bucket, read_ttl=READ_URL_TTL, write_ttl=WRITE_URL_TTL)
