"""
Pytest fixtures for vodpipe tests.

Provides a filesystem-backed object store, a deterministic CDN signer,
a SQLite catalog and in-memory fakes for the encoder and repository.
"""

import os
import tempfile
from pathlib import Path

import pytest
from databases import Database

# Set up test paths BEFORE importing config
_test_temp_dir = tempfile.mkdtemp()
os.environ["VODPIPE_TEST_MODE"] = "1"
os.environ.setdefault("VODPIPE_SCRATCH_DIR", str(Path(_test_temp_dir) / "scratch"))
os.environ.setdefault("VODPIPE_DATABASE_URL", f"sqlite:///{Path(_test_temp_dir) / 'catalog.db'}")
os.environ["VODPIPE_ALERT_WEBHOOK_URL"] = ""

from core.database import create_tables  # noqa: E402
from core.repository import MediaAssetRepository  # noqa: E402
from storage.object_store import FilesystemObjectStore  # noqa: E402
from storage.signing import CdnUrlSigner  # noqa: E402
from tests.fixtures.fakes import (  # noqa: E402
    CDN_BASE_URL,
    CDN_KEY_NAME,
    CDN_KEY_SECRET,
    CLOCK_START,
    FAST_RETRY,
    FakeClock,
    FakeTranscoder,
    InMemoryAssetRepository,
)
from worker.alerts import reset_metrics  # noqa: E402


@pytest.fixture(autouse=True)
def reset_alert_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def clock():
    return FakeClock(CLOCK_START)


@pytest.fixture
def store(tmp_path):
    return FilesystemObjectStore(tmp_path / "objects", policy=FAST_RETRY)


@pytest.fixture
def signer(clock):
    return CdnUrlSigner(CDN_BASE_URL, CDN_KEY_NAME, CDN_KEY_SECRET, read_ttl=3600, write_ttl=900, clock=clock)


@pytest.fixture
def scratch_root(tmp_path):
    root = tmp_path / "scratch"
    root.mkdir()
    return root


@pytest.fixture
def transcoder():
    return FakeTranscoder(duration=60.0)


@pytest.fixture
def repository():
    return InMemoryAssetRepository()


@pytest.fixture
async def catalog(tmp_path):
    """A connected SQLite catalog with the media_assets table."""
    url = f"sqlite:///{tmp_path / 'catalog.db'}"
    create_tables(url)
    database = Database(url)
    await database.connect()
    try:
        yield MediaAssetRepository(database)
    finally:
        await database.disconnect()
