"""
Pytest configuration and fixtures for ArcSync Backend tests.
"""

import io
import os
import shutil
import tempfile
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from PIL import Image

# Set test environment variables before importing the app
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="arcsync_test_"))
os.environ["ARCSYNC_DATABASE_PATH"] = str(_TEST_ROOT / "arcsync.db")
os.environ["ARCSYNC_STORAGE_BACKEND"] = "local"
os.environ["ARCSYNC_STORAGE_PATH"] = str(_TEST_ROOT / "file_storage")
os.environ["ARCSYNC_OCR_COMMAND"] = "arcsync-test-missing-tesseract"
os.environ["ARCSYNC_WARMUP_ENABLED"] = "false"

from arcsync_backend.content_store import LocalContentStore
from arcsync_backend.database import Database
from arcsync_backend.errors import NotFoundError
from arcsync_backend.job_store import TERMINAL_STATUSES
from arcsync_backend.library import LibraryService
from arcsync_backend.main import app
from arcsync_backend.tags import TagCache


@pytest.fixture(scope="session", autouse=True)
def test_root():
    """Temporary root for the app's database and storage; removed after the session."""
    yield _TEST_ROOT
    shutil.rmtree(_TEST_ROOT, ignore_errors=True)


@pytest.fixture
def client():
    """Test client with the application lifespan (Dispatcher) running."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def database(tmp_path):
    return Database(tmp_path / "test.db")


@pytest.fixture
def content_store(tmp_path):
    return LocalContentStore(tmp_path / "content")


@pytest.fixture
def tag_cache():
    return TagCache()


@pytest.fixture
def library(database, content_store, tag_cache):
    return LibraryService(database, content_store, tag_cache)


def make_png(width: int = 20, height: int = 10, color: str = "red") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def png_bytes():
    """Factory for small, real PNG images."""
    return make_png


def wait_for_job(get_job, job_id, timeout: float = 10.0):
    """Poll ``get_job(job_id)`` until the job reaches a terminal status."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            record = get_job(job_id)
        except NotFoundError:
            record = None
        if record is not None and record.status in TERMINAL_STATUSES:
            return record
        time.sleep(0.05)
    raise AssertionError(f"Job {job_id} did not finish within {timeout} seconds")


@pytest.fixture
def job_waiter():
    return wait_for_job
