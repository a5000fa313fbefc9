"""Tests for signed URL issuance and expiry parsing."""

import base64
import hashlib
import hmac
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import boto3
import botocore.exceptions
import pytest
from botocore.config import Config

from core.enums import GrantAction
from core.errors import SigningConfigError
from storage.signing import (
    CdnUrlSigner,
    S3UrlSigner,
    is_url_stale,
    parse_signed_url_expiry,
)
from tests.fixtures.fakes import CDN_BASE_URL, CDN_KEY_BYTES, CDN_KEY_NAME, CLOCK_START


class TestCdnUrlSigner:
    def test_url_shape(self, signer):
        grant = signer.sign("hls/abc/segment_000.ts", 600)
        assert grant.url.startswith(f"{CDN_BASE_URL}/hls/abc/segment_000.ts?Expires=")
        params = parse_qs(urlparse(grant.url).query)
        assert params["Expires"] == [str(int(CLOCK_START) + 600)]
        assert params["KeyName"] == [CDN_KEY_NAME]
        assert grant.expires_at == int(CLOCK_START) + 600
        assert grant.action == GrantAction.READ

    def test_signature_is_hmac_sha1_of_url_prefix(self, signer):
        grant = signer.sign("hls/abc/playlist.m3u8", 3600)
        signed_part, _, signature = grant.url.rpartition("&Signature=")
        digest = hmac.new(CDN_KEY_BYTES, signed_part.encode(), hashlib.sha1).digest()
        assert signature == base64.urlsafe_b64encode(digest).decode().rstrip("=")
        assert "=" not in signature

    def test_default_ttl_is_read_ttl(self, signer):
        assert signer.sign("hls/abc/playlist.m3u8").expires_at == int(CLOCK_START) + 3600

    def test_every_call_is_fresh(self, signer, clock):
        first = signer.sign("hls/abc/segment_000.ts", 600)
        clock.advance(10)
        second = signer.sign("hls/abc/segment_000.ts", 600)
        assert first.url != second.url
        assert second.expires_at == first.expires_at + 10

    def test_verify(self, signer, clock):
        url = signer.sign("hls/abc/segment_000.ts", 600).url
        assert signer.verify(url)
        assert not signer.verify(url.replace("segment_000", "segment_001"))
        assert not signer.verify(url.split("&Signature=")[0])
        clock.advance(601)
        assert not signer.verify(url)

    def test_key_is_url_quoted(self, signer):
        grant = signer.sign("hls/abc/name+with=chars.ts", 60)
        assert "/hls/abc/name%2Bwith%3Dchars.ts?" in grant.url

    @pytest.mark.parametrize("base_url,key_name,secret", [("", "k", "c2VjcmV0"), ("https://cdn", "", "c2VjcmV0"), ("https://cdn", "k", "")])
    def test_missing_configuration(self, base_url, key_name, secret):
        with pytest.raises(SigningConfigError):
            CdnUrlSigner(base_url, key_name, secret).sign("hls/a/playlist.m3u8")

    def test_invalid_key_material(self):
        with pytest.raises(SigningConfigError):
            CdnUrlSigner("https://cdn", "k", "a").sign("hls/a/playlist.m3u8")

    def test_write_grants_refused(self, signer):
        with pytest.raises(SigningConfigError):
            signer.sign("uploads/x.mp4", action=GrantAction.WRITE)

    def test_non_positive_ttl(self, signer):
        with pytest.raises(ValueError):
            signer.sign("hls/a/playlist.m3u8", -5)


@pytest.fixture
def s3_client():
    return boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
        config=Config(signature_version="s3v4"),
    )


class TestS3UrlSigner:
    def test_presigned_get(self, s3_client):
        signer = S3UrlSigner(s3_client, "media-bucket")
        grant = signer.sign("hls/abc/segment_000.ts", 600)
        parsed = urlparse(grant.url)
        params = parse_qs(parsed.query)
        assert parsed.path.endswith("/hls/abc/segment_000.ts")
        assert params["X-Amz-Expires"] == ["600"]
        assert params["X-Amz-Algorithm"] == ["AWS4-HMAC-SHA256"]
        assert grant.expires_at == parse_signed_url_expiry(grant.url)

    def test_presigned_put_for_write(self, s3_client):
        signer = S3UrlSigner(s3_client, "media-bucket", write_ttl=900)
        grant = signer.sign("uploads/ep.mp4", action=GrantAction.WRITE)
        assert grant.action == GrantAction.WRITE
        assert parse_qs(urlparse(grant.url).query)["X-Amz-Expires"] == ["900"]

    def test_ttl_ceiling(self, s3_client):
        with pytest.raises(ValueError):
            S3UrlSigner(s3_client, "media-bucket").sign("hls/a/playlist.m3u8", 8 * 24 * 3600)

    def test_missing_credentials(self):
        client = MagicMock()
        client.generate_presigned_url.side_effect = botocore.exceptions.NoCredentialsError()
        with pytest.raises(SigningConfigError):
            S3UrlSigner(client, "media-bucket").sign("hls/a/playlist.m3u8")


class TestParseSignedUrlExpiry:
    def test_cdn_expires(self):
        assert parse_signed_url_expiry("https://cdn/x.ts?Expires=1700000000&KeyName=k&Signature=s") == 1700000000

    def test_amz_date_plus_expires(self):
        url = "https://b.s3.amazonaws.com/x.ts?X-Amz-Date=20260101T000000Z&X-Amz-Expires=3600&X-Amz-Signature=s"
        assert parse_signed_url_expiry(url) == int(CLOCK_START) + 3600

    def test_goog_date_plus_expires(self):
        url = "https://storage.googleapis.com/b/x.ts?X-Goog-Date=20260101T000000Z&X-Goog-Expires=60"
        assert parse_signed_url_expiry(url) == int(CLOCK_START) + 60

    def test_unrecognized(self):
        assert parse_signed_url_expiry("https://cdn/x.ts") is None
        assert parse_signed_url_expiry("https://cdn/x.ts?Expires=soon") is None
        assert parse_signed_url_expiry("") is None


class TestIsUrlStale:
    URL = f"https://cdn/x.ts?Expires={int(CLOCK_START) + 1000}"

    def test_fresh(self):
        assert not is_url_stale(self.URL, 300, now=CLOCK_START)

    def test_within_buffer(self):
        assert is_url_stale(self.URL, 300, now=CLOCK_START + 700)

    def test_expired(self):
        assert is_url_stale(self.URL, 0, now=CLOCK_START + 1000)

    def test_unknown_expiry_is_stale(self):
        assert is_url_stale("https://cdn/x.ts", 300)
        assert is_url_stale(None, 300)
