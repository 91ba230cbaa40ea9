from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from finledger.apps.api.main import create_app
from finledger.core.config import get_settings
from finledger.core.errors import CredentialNotFoundError
from finledger.domain.events import RECEIPT_CONNECTION_CREATED, RECEIPT_CONNECTION_DISCONNECTED
from finledger.persistence.db import SessionLocal
from finledger.persistence.repos import cursors as cursors_repo
from finledger.providers.base import AccountBalance
from finledger.providers.factory import override_provider
from finledger.providers.fake import FakeSyncProvider
from finledger.services import vault
from finledger.services.sync.engine import sync_connection
from finledger.tests.utils.finance import create_test_connection, fetch_receipts, page, sync_item, tenant_id


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_create_list_get_and_disconnect() -> None:
    tenant = tenant_id()
    async with _client() as client:
        created = await client.post(
            "/v1/connections",
            json={
                "tenant_id": tenant,
                "office_id": "office-1",
                "provider": "plaid",
                "external_account_id": "item-api-1",
                "access_token": "access-sandbox-secret",
                "scopes": ["transactions"],
            },
        )
        assert created.status_code == 201
        connection = created.json()["data"]
        assert connection["status"] == "connected"
        assert "access-sandbox-secret" not in created.text
        connection_id = connection["id"]

        listed = await client.get("/v1/connections", params={"tenant_id": tenant})
        assert [item["id"] for item in listed.json()["data"]["items"]] == [connection_id]

        fetched = await client.get(f"/v1/connections/{connection_id}")
        assert fetched.json()["data"]["external_account_id"] == "item-api-1"

        deleted = await client.delete(f"/v1/connections/{connection_id}")
        assert deleted.status_code == 200
        assert deleted.json()["data"] == {"connection_id": connection_id, "status": "disconnected"}

        missing = await client.get(f"/v1/connections/{connection_id}")
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "CONNECTION_NOT_FOUND"

    async with SessionLocal() as session:
        with pytest.raises(CredentialNotFoundError):
            await vault.load_credential(session, connection_id)
    created_receipts = await fetch_receipts(tenant=tenant, receipt_type=RECEIPT_CONNECTION_CREATED)
    disconnected = await fetch_receipts(tenant=tenant, receipt_type=RECEIPT_CONNECTION_DISCONNECTED)
    assert len(created_receipts) == 1
    assert created_receipts[0].actor_type == "USER"
    assert disconnected[0].result_json["credential_deleted"] is True


@pytest.mark.asyncio
async def test_reauthorizing_same_slot_updates_connection() -> None:
    first = await create_test_connection(external_account_id="item-old", access_token="token-1")
    second = await create_test_connection(
        tenant=first.tenant_id, external_account_id="item-new", access_token="token-2"
    )
    assert second.id == first.id
    assert second.external_account_id == "item-new"
    async with SessionLocal() as session:
        stored = await vault.load_credential(session, first.id)
    assert stored.access_token == "token-2"
    assert stored.rotation_version == 2


@pytest.mark.asyncio
async def test_disconnect_removes_cursors() -> None:
    connection = await create_test_connection()
    await sync_connection(
        connection.id,
        provider=FakeSyncProvider(pages={None: page([sync_item("tx_1")], next_cursor="c1", has_more=False)}),
    )
    async with _client() as client:
        response = await client.delete(f"/v1/connections/{connection.id}")
    assert response.status_code == 200
    async with SessionLocal() as session:
        assert await cursors_repo.get_cursor(session, connection_id=connection.id, stream="transactions") is None


@pytest.mark.asyncio
async def test_sync_endpoint_runs_inline() -> None:
    connection = await create_test_connection()
    fake = FakeSyncProvider(pages={None: page([sync_item("tx_1")], next_cursor="c1", has_more=False)})
    override_provider("plaid", lambda: fake)
    async with _client() as client:
        response = await client.post(f"/v1/connections/{connection.id}/sync")
        assert response.status_code == 202
        data = response.json()["data"]
        assert data == {"connection_id": connection.id, "job_id": f"sync:{connection.id}", "execution_mode": "inline"}

        events = await client.get("/v1/events", params={"tenant_id": connection.tenant_id})
    assert fake.calls == [None]
    items = events.json()["data"]["items"]
    assert [item["provider_event_id"] for item in items] == ["plaid_tx_tx_1"]
    assert items[0]["amount"] == -500


@pytest.mark.asyncio
async def test_sync_endpoint_unknown_connection_is_404() -> None:
    async with _client() as client:
        response = await client.post("/v1/connections/nope/sync")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "CONNECTION_NOT_FOUND"


@pytest.mark.asyncio
async def test_balances_endpoint() -> None:
    connection = await create_test_connection()
    override_provider(
        "plaid",
        lambda: FakeSyncProvider(
            balances=[
                AccountBalance(
                    account_id="acc-1",
                    name="Checking",
                    account_type="depository",
                    account_subtype="checking",
                    current=1000,
                    available=900,
                    limit=None,
                    currency="usd",
                )
            ]
        ),
    )
    async with _client() as client:
        response = await client.post(f"/v1/connections/{connection.id}/balances")
    assert response.status_code == 200
    assert response.json()["data"] == {"connection_id": connection.id, "accounts": 1, "written": 1}


@pytest.mark.asyncio
async def test_pull_sync_unsupported_provider_is_configuration_error() -> None:
    connection = await create_test_connection(provider="gusto")
    async with _client() as client:
        response = await client.post(f"/v1/connections/{connection.id}/balances")
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "CONFIGURATION_ERROR"


@pytest.mark.asyncio
async def test_api_token_is_enforced_when_configured(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("API_TOKEN", "operator-token")
    get_settings.cache_clear()
    tenant = tenant_id()
    async with _client() as client:
        anonymous = await client.get("/v1/connections", params={"tenant_id": tenant})
        wrong = await client.get(
            "/v1/connections", params={"tenant_id": tenant}, headers={"Authorization": "Bearer nope"}
        )
        allowed = await client.get(
            "/v1/connections", params={"tenant_id": tenant}, headers={"Authorization": "Bearer operator-token"}
        )
        health = await client.get("/v1/health")
    assert anonymous.status_code == 401
    assert anonymous.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert wrong.status_code == 401
    assert allowed.status_code == 200
    assert health.status_code == 200


@pytest.mark.asyncio
async def test_list_requires_tenant_scope() -> None:
    async with _client() as client:
        response = await client.get("/v1/connections")
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_events_pagination_and_filters() -> None:
    connection = await create_test_connection()
    await sync_connection(
        connection.id,
        provider=FakeSyncProvider(
            pages={
                None: page(
                    [sync_item(f"tx_{index}") for index in range(5)] + [sync_item("tx_p", pending=True)],
                    next_cursor="c1",
                    has_more=False,
                )
            }
        ),
    )
    async with _client() as client:
        first = await client.get("/v1/events", params={"tenant_id": connection.tenant_id, "limit": 4})
        second = await client.get(
            "/v1/events", params={"tenant_id": connection.tenant_id, "limit": 4, "offset": 4}
        )
        pending = await client.get(
            "/v1/events", params={"tenant_id": connection.tenant_id, "event_type": "bank_tx_pending"}
        )
        other_tenant = await client.get("/v1/events", params={"tenant_id": tenant_id()})
    assert len(first.json()["data"]["items"]) == 4
    assert first.json()["data"]["next_offset"] == 4
    assert len(second.json()["data"]["items"]) == 2
    assert second.json()["data"]["next_offset"] is None
    assert [item["provider_event_id"] for item in pending.json()["data"]["items"]] == ["plaid_tx_tx_p"]
    assert other_tenant.json()["data"]["items"] == []


@pytest.mark.asyncio
async def test_health_reports_inline_mode() -> None:
    async with _client() as client:
        response = await client.get("/v1/health")
    data = response.json()["data"]
    assert data["status"] == "ok"
    assert data["database"] is True
    assert data["execution_mode"] == "inline"
    assert data["queue_depth"] == 0
    assert data["worker_heartbeat_at"] is None
