import io
import random

import boto3
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from moto import mock_aws
from PIL import Image
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

import photoflow.services.storage as storage_service
from photoflow.config import settings
from photoflow.main import create_app
from photoflow.models import Base
from photoflow.repository import PhotoRepository
from photoflow.simulator import ProcessingSimulator


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def mock_settings(monkeypatch):
    """Ensure tests don't touch real infrastructure."""
    monkeypatch.setattr(settings, "aws_s3_bucket", "test-bucket")
    monkeypatch.setattr(settings, "aws_region", "us-east-1")
    monkeypatch.setattr(settings, "aws_endpoint_url", None)
    monkeypatch.setattr(settings, "public_base_url", None)
    monkeypatch.setattr(settings, "redis_url", "redis://localhost:6379/1")
    monkeypatch.setattr(settings, "metrics_enabled", False)
    monkeypatch.setattr(settings, "max_retries", 3)

    # Clear S3 client cache to ensure it picks up mock settings
    monkeypatch.setattr(storage_service, "_s3_client", None)
    return settings

@pytest.fixture
def s3_mock(mock_settings):
    with mock_aws():
        s3 = boto3.client("s3", region_name="us-east-1")
        s3.create_bucket(Bucket=mock_settings.aws_s3_bucket)
        yield s3

@pytest.fixture(autouse=True)
def patch_s3_client(s3_mock, monkeypatch):
    """Force the storage service to use our mocked client instance."""
    monkeypatch.setattr(storage_service, "_get_client", lambda: s3_mock)
    monkeypatch.setattr(storage_service, "_s3_client", s3_mock)

@pytest_asyncio.fixture
async def test_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test_photoflow.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()

@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)

@pytest.fixture
def repository(session_factory):
    return PhotoRepository(session_factory)

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def simulator(repository, clock):
    """Deterministic simulator: seeded, hand-driven clock, never fails on its own."""
    return ProcessingSimulator(
        repository,
        rng=random.Random(1234),
        clock=clock,
        min_duration=10.0,
        max_duration=20.0,
        failure_rate=0.0,
        max_retries=3,
    )

@pytest.fixture
def app(session_factory):
    return create_app(session_factory=session_factory)

@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

@pytest.fixture
def png_bytes():
    """A small but real PNG image."""
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color="blue").save(buffer, format="PNG")
    return buffer.getvalue()
