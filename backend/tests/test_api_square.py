"""
HTTP surface tests for the webhook receiver, sync trigger and run history
"""
from types import SimpleNamespace
from typing import AsyncGenerator
import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.api.v1.square import get_webhook_handler
from app.config import settings
from app.database import get_db
from app.main import app
from app.models.order import Order, OrderStatus
from app.models.sync_run import CatalogSyncRun, SyncStatus, SyncTrigger
from app.services.webhook_service import SIGNATURE_HEADER, WebhookHandler, compute_signature
import app.tasks.sync_square_data as sync_tasks

SIGNATURE_KEY = "test-signature-key"
NOTIFICATION_URL = "https://example.com/api/v1/square/webhooks"


class FakeTask:
    def __init__(self):
        self.calls = []

    def delay(self, *args, **kwargs):
        self.calls.append((args, kwargs))
        return SimpleNamespace(id="task-123")


@pytest_asyncio.fixture
async def client(session_factory, square_client, cache) -> AsyncGenerator[AsyncClient, None]:
    """
    Yield an AsyncClient bound to the app with storage and webhook handler overridden.
    """
    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_webhook_handler] = lambda: WebhookHandler(
        session_factory=session_factory,
        square_client=square_client,
        cache=cache,
        signature_key=SIGNATURE_KEY,
        notification_url=NOTIFICATION_URL,
    )
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


def webhook_body(order_id="ord-1", state="OPEN"):
    return json.dumps({
        "type": "order.updated",
        "event_id": "evt-1",
        "merchant_id": "merchant-1",
        "data": {"type": "order", "id": order_id, "object": {"order_updated": {"order_id": order_id, "state": state}}},
    }).encode()


def signature_for(body: bytes) -> dict:
    return {SIGNATURE_HEADER: compute_signature(body, SIGNATURE_KEY, NOTIFICATION_URL)}


@pytest.mark.asyncio
@pytest.mark.integration
async def test_health(client: AsyncClient):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}
    assert response.headers["X-Content-Type-Options"] == "nosniff"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_webhook_with_bad_signature_is_unauthorized(client: AsyncClient, session_factory):
    response = await client.post(
        "/api/v1/square/webhooks",
        content=webhook_body(),
        headers={SIGNATURE_HEADER: "forged", "Content-Type": "application/json"},
    )

    assert response.status_code == 401
    assert response.json() == {"success": False, "message": "Invalid signature"}
    with session_factory() as session:
        assert session.query(Order).count() == 0


@pytest.mark.asyncio
@pytest.mark.integration
async def test_webhook_with_non_ascii_signature_is_unauthorized(client: AsyncClient):
    response = await client.post(
        "/api/v1/square/webhooks",
        content=webhook_body(),
        headers={SIGNATURE_HEADER: "ébad".encode("utf-8")},
    )

    assert response.status_code == 401
    assert response.json() == {"success": False, "message": "Invalid signature"}


@pytest.mark.asyncio
@pytest.mark.integration
async def test_webhook_route_is_not_rate_limited(client: AsyncClient):
    statuses = set()
    for _ in range(settings.RATE_LIMIT_PER_MINUTE + 5):
        response = await client.post("/api/v1/square/webhooks", content=webhook_body())
        statuses.add(response.status_code)

    assert statuses == {401}


@pytest.mark.asyncio
@pytest.mark.integration
async def test_webhook_without_signature_is_unauthorized(client: AsyncClient):
    response = await client.post("/api/v1/square/webhooks", content=webhook_body())

    assert response.status_code == 401


@pytest.mark.asyncio
@pytest.mark.integration
async def test_signed_webhook_is_applied(client: AsyncClient, session_factory):
    with session_factory() as session:
        session.add(Order(square_order_id="ord-1", status=OrderStatus.PENDING))
        session.commit()
    body = webhook_body()

    response = await client.post("/api/v1/square/webhooks", content=body, headers=signature_for(body))

    assert response.status_code == 200, response.text
    assert response.json()["success"] is True
    with session_factory() as session:
        assert session.query(Order).one().status == OrderStatus.PROCESSING


@pytest.mark.asyncio
@pytest.mark.integration
async def test_signed_unknown_event_is_acknowledged(client: AsyncClient):
    body = json.dumps({"type": "team_member.created", "event_id": "evt-9", "data": {}}).encode()

    response = await client.post("/api/v1/square/webhooks", content=body, headers=signature_for(body))

    assert response.status_code == 200
    assert response.json()["success"] is True


@pytest.mark.asyncio
@pytest.mark.integration
async def test_signed_garbage_is_bad_request(client: AsyncClient):
    body = b"definitely not json"

    response = await client.post("/api/v1/square/webhooks", content=body, headers=signature_for(body))

    assert response.status_code == 400
    assert response.json()["success"] is False


@pytest.mark.asyncio
@pytest.mark.integration
async def test_sync_catalog_queues_task(client: AsyncClient, session_factory, monkeypatch):
    task = FakeTask()
    monkeypatch.setattr(sync_tasks, "sync_square_catalog", task)

    response = await client.post("/api/v1/square/sync-catalog", json={"reason": "menu refresh"})

    assert response.status_code == 202, response.text
    payload = response.json()
    assert payload["task_id"] == "task-123"
    assert task.calls == [((payload["run_id"], "manual"), {})]
    with session_factory() as session:
        run = session.query(CatalogSyncRun).one()
        assert str(run.id) == payload["run_id"]
        assert run.status == SyncStatus.PENDING
        assert run.task_id == "task-123"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_sync_runs_are_listed(client: AsyncClient, session_factory):
    with session_factory() as session:
        session.add_all([
            CatalogSyncRun(trigger=SyncTrigger.SCHEDULED, status=SyncStatus.COMPLETED, total_items=4, synced_items=4),
            CatalogSyncRun(trigger=SyncTrigger.WEBHOOK, status=SyncStatus.FAILED, error_message="boom"),
        ])
        session.commit()

    response = await client.get("/api/v1/square/sync-runs", params={"limit": 10})

    assert response.status_code == 200
    payload = response.json()
    assert payload["total"] == 2
    assert {run["trigger"] for run in payload["runs"]} == {"scheduled", "webhook"}
    failed = next(run for run in payload["runs"] if run["status"] == "failed")
    assert failed["error_message"] == "boom"
