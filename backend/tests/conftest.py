"""
Pytest configuration for the scan pipeline tests.
"""

import time
from types import SimpleNamespace

import jwt
import pytest

from scan_pipeline.db import ensure_schema
from scan_pipeline.feature_flags import FeatureFlags
from scan_pipeline.services.enrichment_queue import EnrichmentQueueStore
from scan_pipeline.services.queue_store import QueueStore
from scan_pipeline.services.wine_repository import WineRepository

SUPABASE_URL = "https://vinhotest.supabase.co"
JWT_SECRET = "test-jwt-secret-that-is-at-least-32-bytes"
SERVICE_ROLE_KEY = "test-service-role-key"
ADMIN_KEY = "test-cleanup-admin-key"
IMAGE_URL = f"{SUPABASE_URL}/storage/v1/object/public/scans/user-1/1700000000000.jpg"

# Smallest thing that passes the JPEG magic check
FAKE_JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 64


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an asyncio test"
    )

    # Mark the service as ready for tests (bypasses warmup middleware)
    # This is needed because TestClient doesn't trigger lifespan events
    from main import set_ready
    set_ready(True)


@pytest.fixture(autouse=True)
def pipeline_env(monkeypatch):
    """Deterministic credentials and hosts for every test."""
    monkeypatch.setenv("SUPABASE_URL", SUPABASE_URL)
    monkeypatch.setenv("SUPABASE_JWT_SECRET", JWT_SECRET)
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", SERVICE_ROLE_KEY)
    monkeypatch.setenv("CLEANUP_ADMIN_KEY", ADMIN_KEY)
    monkeypatch.delenv("TRUSTED_IMAGE_HOSTS", raising=False)
    monkeypatch.delenv("QUEUE_DEFAULT_LIMIT", raising=False)
    monkeypatch.delenv("QUEUE_MAX_LIMIT", raising=False)
    monkeypatch.delenv("QUEUE_MAX_RETRIES", raising=False)
    monkeypatch.delenv("ENRICHMENT_QUEUE_DEFAULT_LIMIT", raising=False)
    monkeypatch.delenv("ENRICHMENT_QUEUE_MAX_LIMIT", raising=False)


@pytest.fixture
def db_path(tmp_path):
    """Create a fresh DB with schema applied."""
    path = str(tmp_path / "test.db")
    ensure_schema(path)
    return path


@pytest.fixture
def queue(db_path):
    store = QueueStore(db_path)
    yield store
    store.close()


@pytest.fixture
def repo(db_path):
    repository = WineRepository(db_path)
    yield repository
    repository.close()


@pytest.fixture
def enrichment_queue(db_path):
    store = EnrichmentQueueStore(db_path)
    yield store
    store.close()


@pytest.fixture
def flags():
    """All optional pipeline features on, escalation off, no background runs."""
    return FeatureFlags(
        feature_enrichment=True,
        feature_geocoding=True,
        feature_auto_tasting=True,
        feature_process_on_submit=False,
        feature_low_confidence_escalation=False,
    )


def make_token(sub="user-1", secret=JWT_SECRET, expires_in=3600, **claims):
    """HS256 token shaped like a Supabase session (or service) JWT."""
    payload = {"sub": sub, "aud": "authenticated", "role": "authenticated", "exp": int(time.time()) + expires_in}
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_header(token):
    return {"Authorization": f"Bearer {token}"}


def llm_response(content):
    """Fake litellm completion response."""
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])
