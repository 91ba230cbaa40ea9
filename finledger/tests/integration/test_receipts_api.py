from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from finledger.apps.api.main import create_app
from finledger.domain.events import RECEIPT_CONNECTION_CREATED, RECEIPT_SYNC_EXECUTED
from finledger.persistence.db import SessionLocal
from finledger.providers.fake import FakeSyncProvider
from finledger.services.receipts import seal_pending_receipts
from finledger.services.sync.engine import sync_connection
from finledger.tests.utils.finance import create_test_connection, page, sync_item, tenant_id


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_list_get_and_verify_receipts() -> None:
    connection = await create_test_connection(access_token="access-never-in-receipts")
    await sync_connection(
        connection.id,
        provider=FakeSyncProvider(pages={None: page([sync_item("tx_1")], next_cursor="c1", has_more=False)}),
    )

    async with _client() as client:
        listed = await client.get("/v1/receipts", params={"tenant_id": connection.tenant_id})
        items = listed.json()["data"]["items"]
        assert [item["receipt_type"] for item in items] == [RECEIPT_SYNC_EXECUTED, RECEIPT_CONNECTION_CREATED]
        assert "access-never-in-receipts" not in listed.text

        sync_receipt = items[0]
        assert sync_receipt["status"] == "SUCCEEDED"
        assert sync_receipt["actor_type"] == "WORKER"
        assert sync_receipt["action"]["connection_id"] == connection.id
        assert sync_receipt["result"]["written"] == 1

        pending = await client.get(f"/v1/receipts/{sync_receipt['receipt_id']}/verify")
        assert pending.json()["data"] == {
            "receipt_id": sync_receipt["receipt_id"],
            "status": "pending",
            "reason": "not_sealed",
        }

        async with SessionLocal() as session:
            assert await seal_pending_receipts(session) == 2

        fetched = await client.get(f"/v1/receipts/{sync_receipt['receipt_id']}")
        assert fetched.json()["data"]["receipt_hash"]
        assert fetched.json()["data"]["sealed_at"]

        verified = await client.get(f"/v1/receipts/{sync_receipt['receipt_id']}/verify")
        assert verified.json()["data"]["status"] == "valid"

        filtered = await client.get(
            "/v1/receipts",
            params={"tenant_id": connection.tenant_id, "receipt_type": RECEIPT_CONNECTION_CREATED},
        )
        assert len(filtered.json()["data"]["items"]) == 1


@pytest.mark.asyncio
async def test_unknown_receipt_is_404() -> None:
    async with _client() as client:
        response = await client.get("/v1/receipts/does-not-exist")
        verify = await client.get("/v1/receipts/does-not-exist/verify")
    assert response.status_code == 404
    assert response.json()["error"] == {"code": "NOT_FOUND", "message": "Receipt not found"}
    assert verify.status_code == 404


@pytest.mark.asyncio
async def test_receipts_are_tenant_scoped() -> None:
    await create_test_connection()
    async with _client() as client:
        response = await client.get("/v1/receipts", params={"tenant_id": tenant_id()})
    assert response.json()["data"]["items"] == []
