#  HDR Backend - Test Fixtures
#
#  Shared fixtures for the test suite.
#  Real clients talk to in-memory upstreams through httpx.MockTransport;
#  the app uses DI container overrides instead of monkey-patching singletons.
#
#  Depends on: hdr_backend/db/connection.py, hdr_backend/container.py,
#              hdr_backend/app.py, tests/fakes.py
#  Used by:    all test files

from unittest.mock import AsyncMock, patch

import httpx
import pytest
from dependency_injector import providers

from tests.fakes import (
    BUCKET,
    PROVIDER_URL,
    SUPABASE_URL,
    TEST_JWT_SECRET,
    TEST_WEBHOOK_TOKEN,
    USER_ID,
    FakeProvider,
    FakeSupabase,
    make_token,
)


# ---------------------------------------------------------------------------
# Speed: no real backoff or verify waits
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    monkeypatch.setattr("hdr_backend.services.provider.RETRY_BACKOFF_SECONDS", [0, 0, 0])
    monkeypatch.setattr("hdr_backend.services.uploads.VERIFY_INTERVAL", 0)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def tmp_db(tmp_path):
    """Create a fresh async database with schema applied."""
    from hdr_backend.db.connection import Database

    test_db = Database()
    db_path = tmp_path / "test.db"
    await test_db.init(str(db_path))

    yield test_db

    await test_db.close()


@pytest.fixture
async def store(tmp_db):
    from hdr_backend.services.store import OrderStore
    return OrderStore(db=tmp_db)


async def create_test_order(store, order_id: str | None = None, user_id: str = USER_ID,
                            status: str | None = None, name: str = "Test Order") -> dict:
    """Insert an order row directly; optionally force its status."""
    import uuid
    order_id = order_id or str(uuid.uuid4())
    await store.create_order(order_id, user_id, {"source": "test"}, name=name)
    if status:
        await store._db.execute_write(
            "UPDATE orders SET status = ?, progress = ? WHERE id = ?",
            (status, 100 if status in ("completed", "previews_ready") else 0, order_id),
        )
    return await store.get_order(order_id, user_id)


# ---------------------------------------------------------------------------
# Upstream fakes and real clients bound to them
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
async def provider_client(fake_provider):
    from hdr_backend.services.provider import AutoEnhanceClient

    http = httpx.AsyncClient(transport=httpx.MockTransport(fake_provider.handler))
    yield AutoEnhanceClient(http_client=http, base_url=PROVIDER_URL, api_key="test-api-key")
    await http.aclose()


@pytest.fixture
async def object_store(fake_supabase):
    from hdr_backend.services.storage import ObjectStore

    http = httpx.AsyncClient(transport=httpx.MockTransport(fake_supabase.handler))
    yield ObjectStore(http_client=http, base_url=SUPABASE_URL, bucket=BUCKET, api_key="anon-key")
    await http.aclose()


@pytest.fixture
async def broadcaster(fake_supabase):
    from hdr_backend.services.broadcast import Broadcaster

    http = httpx.AsyncClient(transport=httpx.MockTransport(fake_supabase.handler))
    yield Broadcaster(http_client=http, base_url=SUPABASE_URL, api_key="service-key")
    await http.aclose()


@pytest.fixture
async def runner():
    from hdr_backend.services.tasks import TaskRunner

    task_runner = TaskRunner()
    yield task_runner
    await task_runner.drain(timeout=5)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@pytest.fixture
def services(store, provider_client, object_store, broadcaster, runner):
    """Every workflow service wired to the same store and fakes."""
    from hdr_backend.services.completion import CompletionService
    from hdr_backend.services.downloads import DownloadService
    from hdr_backend.services.orders import OrderService
    from hdr_backend.services.processing import ProcessingService
    from hdr_backend.services.uploads import UploadService

    class _Services:
        pass

    s = _Services()
    s.orders = OrderService(store=store, provider=provider_client, object_store=object_store, runner=runner)
    s.uploads = UploadService(store=store, provider=provider_client, broadcaster=broadcaster)
    s.processing = ProcessingService(store=store, provider=provider_client, broadcaster=broadcaster)
    s.completion = CompletionService(
        store=store, provider=provider_client, object_store=object_store,
        broadcaster=broadcaster, runner=runner,
    )
    s.downloads = DownloadService(store=store, provider=provider_client, object_store=object_store)
    return s


# ---------------------------------------------------------------------------
# FastAPI client fixture
# ---------------------------------------------------------------------------

_OVERRIDDEN = (
    "db", "store", "runner", "provider", "object_store", "broadcaster",
    "token_verifier", "webhook_token",
    "orders", "uploads", "processing", "completion", "downloads",
    "provider_http", "storage_http", "broadcast_http",
)


@pytest.fixture
async def app_client(tmp_db, store, provider_client, object_store, broadcaster, runner, services):
    """httpx client bound to the app with a fresh database and fake upstreams.

    Uses explicit try/finally with reset_override() instead of context managers
    to ensure DI state is fully cleaned up between tests.
    """
    from httpx import ASGITransport, AsyncClient
    from hdr_backend.app import app, container
    from hdr_backend.rate_limit import limiter
    from hdr_backend.services.auth import TokenVerifier

    mock_http = AsyncMock()
    mock_http.aclose = AsyncMock()

    objects = {
        "db": tmp_db,
        "store": store,
        "runner": runner,
        "provider": provider_client,
        "object_store": object_store,
        "broadcaster": broadcaster,
        "token_verifier": TokenVerifier(secret=TEST_JWT_SECRET),
        "webhook_token": TEST_WEBHOOK_TOKEN,
        "orders": services.orders,
        "uploads": services.uploads,
        "processing": services.processing,
        "completion": services.completion,
        "downloads": services.downloads,
        "provider_http": mock_http,
        "storage_http": mock_http,
        "broadcast_http": mock_http,
    }

    init_patcher = patch.object(tmp_db, "init", new_callable=AsyncMock)
    for name in _OVERRIDDEN:
        getattr(container, name).override(providers.Object(objects[name]))
    init_patcher.start()

    # Reset rate limiter storage so tests don't hit limits from prior tests
    limiter.reset()

    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        init_patcher.stop()
        for name in _OVERRIDDEN:
            getattr(container, name).reset_override()


@pytest.fixture
async def authed_client(app_client):
    """app_client with a signed bearer token for USER_ID."""
    app_client.headers["Authorization"] = f"Bearer {make_token()}"
    yield app_client


@pytest.fixture
def webhook_headers():
    return {"Authorization": f"Bearer {TEST_WEBHOOK_TOKEN}"}
