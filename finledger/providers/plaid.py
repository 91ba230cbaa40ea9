from __future__ import annotations

import logging
import time
from datetime import date, datetime, time as dt_time, timezone
from typing import Any

import httpx

from finledger.core.config import get_settings
from finledger.core.errors import ConfigurationError, UpstreamError, UpstreamRateLimitedError
from finledger.providers.base import AccountBalance, RemovedItem, SyncItem, SyncPage, to_minor_units
from finledger.services.resilience import RetryPolicy, retry_async
from finledger.services.telemetry import record_external_call
from finledger.services.vault import CredentialHandle


logger = logging.getLogger(__name__)

_SYNC_PAGE_SIZE = 500


def _parse_occurred_at(item: dict[str, Any]) -> datetime:
    # Prefer the precise timestamp; fall back to the posting date at UTC midnight.
    raw_datetime = item.get("datetime") or item.get("authorized_datetime")
    if raw_datetime:
        parsed = datetime.fromisoformat(str(raw_datetime).replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raw_date = item.get("date") or item.get("authorized_date")
    if raw_date:
        return datetime.combine(date.fromisoformat(str(raw_date)), dt_time.min, tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


def _currency(item: dict[str, Any]) -> str:
    code = item.get("iso_currency_code") or item.get("unofficial_currency_code") or "usd"
    return str(code).lower()


def parse_transaction(item: dict[str, Any]) -> SyncItem:
    return SyncItem(
        native_id=str(item["transaction_id"]),
        account_id=item.get("account_id"),
        amount=to_minor_units(item.get("amount")),
        currency=_currency(item),
        pending=bool(item.get("pending")),
        occurred_at=_parse_occurred_at(item),
        category=item.get("category"),
        name=item.get("name"),
        merchant_name=item.get("merchant_name"),
        payment_channel=item.get("payment_channel"),
        raw=item,
    )


def parse_sync_response(payload: dict[str, Any]) -> SyncPage:
    return SyncPage(
        added=[parse_transaction(item) for item in payload.get("added") or []],
        modified=[parse_transaction(item) for item in payload.get("modified") or []],
        removed=[
            RemovedItem(native_id=str(item["transaction_id"]), account_id=item.get("account_id"))
            for item in payload.get("removed") or []
        ],
        next_cursor=str(payload.get("next_cursor") or ""),
        has_more=bool(payload.get("has_more")),
    )


def _optional_minor(value: Any) -> int | None:
    return None if value is None else to_minor_units(value)


def parse_balance(account: dict[str, Any]) -> AccountBalance:
    balances = account.get("balances") or {}
    return AccountBalance(
        account_id=str(account["account_id"]),
        name=account.get("name"),
        account_type=account.get("type"),
        account_subtype=account.get("subtype"),
        current=_optional_minor(balances.get("current")),
        available=_optional_minor(balances.get("available")),
        limit=_optional_minor(balances.get("limit")),
        currency=_currency(balances),
        raw=balances,
    )


class PlaidClient:
    """Minimal async Plaid API client covering sync, balances and webhook keys."""

    name = "plaid"

    def __init__(
        self,
        *,
        base_url: str | None = None,
        client_id: str | None = None,
        secret: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        settings = get_settings()
        self._base_url = (base_url or settings.resolved_plaid_base_url()).rstrip("/")
        self._client_id = client_id or settings.plaid_client_id
        self._secret = secret or settings.plaid_secret
        self._timeout = settings.ext_call_timeout_ms / 1000.0
        self._transport = transport
        self._policy = policy

    def _credentials(self) -> dict[str, str]:
        # Missing API credentials fail closed before any network call.
        if not self._client_id or not self._secret:
            raise ConfigurationError("PLAID_CLIENT_ID and PLAID_SECRET must be configured")
        return {"client_id": self._client_id, "secret": self._secret}

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        body = {**self._credentials(), **payload}
        url = f"{self._base_url}{path}"

        async def _call() -> dict[str, Any]:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(url, json=body)
            if response.status_code == 429:
                raise UpstreamRateLimitedError(f"plaid rate limited {path}", status_code=429)
            if response.status_code >= 400:
                error_code = None
                try:
                    error_code = response.json().get("error_code")
                except ValueError:
                    pass
                raise UpstreamError(
                    f"plaid {path} failed status={response.status_code} error_code={error_code}",
                    status_code=response.status_code,
                )
            return response.json()

        start = time.monotonic()
        try:
            data = await retry_async(_call, policy=self._policy)
        except Exception:
            record_external_call(
                integration=f"plaid{path}",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("plaid_call_failed path=%s", path)
            raise
        record_external_call(
            integration=f"plaid{path}",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        return data

    async def transactions_sync(self, credential: CredentialHandle, *, cursor: str | None) -> SyncPage:
        payload: dict[str, Any] = {"access_token": credential.access_token, "count": _SYNC_PAGE_SIZE}
        # An absent cursor requests full history.
        if cursor:
            payload["cursor"] = cursor
        return parse_sync_response(await self._post("/transactions/sync", payload))

    async def account_balances(self, credential: CredentialHandle) -> list[AccountBalance]:
        data = await self._post("/accounts/balance/get", {"access_token": credential.access_token})
        return [parse_balance(account) for account in data.get("accounts") or []]

    async def webhook_verification_key(self, key_id: str) -> dict[str, Any]:
        data = await self._post("/webhook_verification_key/get", {"key_id": key_id})
        key = data.get("key")
        if not isinstance(key, dict):
            raise UpstreamError("plaid verification key response missing key")
        return key
