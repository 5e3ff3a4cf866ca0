"""Shared fixtures for the media API tests.

Importing ``main`` builds a module-level app from the environment, so the
environment is pointed at a throwaway uploads directory before anything is
imported. Each test then builds its own app around a ``tmp_path`` sandbox.
"""

import io
import os
import tempfile

os.environ.setdefault("UPLOADS_DIR", tempfile.mkdtemp(prefix="portfolio-uploads-"))
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from fastapi.testclient import TestClient
from PIL import Image  # type: ignore

from portfolio_media.config import Settings
from portfolio_media.pipeline import Pipeline
from portfolio_media.storage import LocalStorageClient, Store

SVG_ICON = (
    b'<?xml version="1.0" encoding="UTF-8"?>\n'
    b'<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 24 24">'
    b'<circle cx="12" cy="12" r="10" fill="#0af"/></svg>\n'
)


def make_image(width, height, fmt="JPEG", color=(200, 30, 30), mode="RGB", **save_kwargs):
    """Encode a solid image of the given size in memory."""
    if mode == "RGBA" and len(color) == 3:
        color = color + (128,)
    img = Image.new(mode, (width, height), color=color)
    buf = io.BytesIO()
    img.save(buf, format=fmt, **save_kwargs)
    return buf.getvalue()


def open_image(data):
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


class FakeResult:
    def __init__(self, return_value=None, exc_string=None):
        self.return_value = return_value
        self.exc_string = exc_string


class FakeJob:
    """Mirrors the parts of ``rq.job.Job`` the API reads."""

    def __init__(self, job_id, func, kwargs):
        self.id = job_id
        self.func = func
        self.kwargs = kwargs or {}
        self.is_finished = False
        self.is_failed = False
        self._result = None

    def get_status(self, refresh=True):
        if self.is_failed:
            return "failed"
        return "finished" if self.is_finished else "queued"

    def latest_result(self):
        return self._result

    def return_value(self):
        return self._result.return_value if self._result else None

    def perform(self):
        try:
            value = self.func(**self.kwargs)
        except Exception as exc:
            self.is_failed = True
            self._result = FakeResult(exc_string=f"{type(exc).__name__}: {exc}")
            return None
        self.is_finished = True
        self._result = FakeResult(return_value=value)
        return value


class FakeQueue:
    """Stands in for an rq Queue: records jobs instead of talking to Redis."""

    def __init__(self):
        self.jobs = {}

    def enqueue(self, func, kwargs=None):
        job = FakeJob(f"job-{len(self.jobs) + 1}", func, kwargs)
        self.jobs[job.id] = job
        return job

    def fetch_job(self, job_id):
        return self.jobs.get(job_id)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def uploads_dir(tmp_path):
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def settings(uploads_dir):
    return Settings(environment="test", uploads_dir=uploads_dir, cleanup_grace_seconds=0)


@pytest.fixture
def local_client(settings):
    client = LocalStorageClient(settings.uploads_dir, settings.uploads_url_prefix)
    client.ensure_root()
    return client


@pytest.fixture
def store(local_client):
    return Store(local_client)


@pytest.fixture
def pipeline(store):
    return Pipeline(store)


@pytest.fixture
def queue():
    return FakeQueue()


@pytest.fixture
def app(settings, queue):
    from main import create_app

    return create_app(settings, queue=queue)


@pytest.fixture
def client(app):
    return TestClient(app)


def stored_files(root):
    return sorted(p for p in root.rglob("*") if p.is_file())
