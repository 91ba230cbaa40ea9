from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from finledger.domain.events import FinanceEventType
from finledger.providers.base import RemovedItem, to_minor_units
from finledger.services.ledger import IngestCommand
from finledger.services.sync.commands import removal_command


logger = logging.getLogger(__name__)

PLAID_EVENT_MAP: dict[str, FinanceEventType] = {
    "TRANSACTIONS.DEFAULT_UPDATE": FinanceEventType.BANK_TX_POSTED,
    "TRANSACTIONS.INITIAL_UPDATE": FinanceEventType.BANK_TX_POSTED,
    "TRANSACTIONS.HISTORICAL_UPDATE": FinanceEventType.BANK_TX_POSTED,
    "TRANSACTIONS.TRANSACTIONS_REMOVED": FinanceEventType.BANK_TX_REVERSED,
    "TRANSACTIONS.SYNC_UPDATES_AVAILABLE": FinanceEventType.BANK_TX_POSTED,
    "ITEM.WEBHOOK_UPDATE_ACKNOWLEDGED": FinanceEventType.BANK_ACCOUNT_LINKED,
    "ITEM.ERROR": FinanceEventType.BANK_ITEM_ERROR,
    "ITEM.PENDING_EXPIRATION": FinanceEventType.BANK_ITEM_ERROR,
    "ITEM.USER_PERMISSION_REVOKED": FinanceEventType.BANK_ITEM_ERROR,
    "HOLDINGS.DEFAULT_UPDATE": FinanceEventType.BANK_BALANCE_UPDATED,
    "BALANCE.DEFAULT_UPDATE": FinanceEventType.BANK_BALANCE_UPDATED,
}

# Notifications that mean new data is waiting behind the sync cursor.
PLAID_SYNC_TRIGGERS = frozenset({"TRANSACTIONS.SYNC_UPDATES_AVAILABLE", "TRANSACTIONS.DEFAULT_UPDATE"})

STRIPE_EVENT_MAP: dict[str, FinanceEventType] = {
    "invoice.sent": FinanceEventType.INVOICE_SENT,
    "invoice.paid": FinanceEventType.INVOICE_PAID,
    "invoice.payment_succeeded": FinanceEventType.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": FinanceEventType.PAYMENT_FAILED,
    "payment_intent.succeeded": FinanceEventType.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": FinanceEventType.PAYMENT_FAILED,
    "charge.refunded": FinanceEventType.PAYMENT_REFUNDED,
    "payout.created": FinanceEventType.PAYOUT_CREATED,
    "payout.paid": FinanceEventType.PAYOUT_PAID,
    "payout.failed": FinanceEventType.PAYOUT_FAILED,
    "balance.available": FinanceEventType.BALANCE_PENDING_TO_AVAILABLE,
}

GUSTO_EVENT_MAP: dict[str, FinanceEventType] = {
    "payroll.calculated": FinanceEventType.PAYROLL_CALCULATED,
    "payroll.submitted": FinanceEventType.PAYROLL_SUBMITTED,
    "payroll.processed": FinanceEventType.PAYROLL_PAID,
    "payroll.reversed": FinanceEventType.PAYROLL_PAID,
    "employee.created": FinanceEventType.EMPLOYEE_CHANGED,
    "employee.updated": FinanceEventType.EMPLOYEE_CHANGED,
    "employee.terminated": FinanceEventType.EMPLOYEE_CHANGED,
    "company.updated": FinanceEventType.EMPLOYEE_CHANGED,
}

QBO_EVENT_MAP: dict[str, FinanceEventType] = {
    "Invoice": FinanceEventType.QBO_INVOICE_CHANGED,
    "Payment": FinanceEventType.QBO_PAYMENT_CHANGED,
    "JournalEntry": FinanceEventType.QBO_JOURNAL_POSTED,
    "ProfitAndLoss": FinanceEventType.QBO_REPORT_REFRESHED,
    "BalanceSheet": FinanceEventType.QBO_REPORT_REFRESHED,
    "Estimate": FinanceEventType.QBO_INVOICE_CHANGED,
    "Bill": FinanceEventType.QBO_PAYMENT_CHANGED,
    "BillPayment": FinanceEventType.QBO_PAYMENT_CHANGED,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    # Accept epoch seconds or ISO-8601; fall back to receipt time.
    if value is None or value == "":
        return _utc_now()
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return _utc_now()
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class _WebhookModel(BaseModel):
    # Unknown upstream fields are kept but never trusted.
    model_config = ConfigDict(extra="allow")

    @property
    def event_key(self) -> str:
        raise NotImplementedError

    @property
    def external_account_id(self) -> str | None:
        return None

    @property
    def triggers_sync(self) -> bool:
        return False

    def to_commands(self, *, body_sha256: str) -> list[IngestCommand]:
        raise NotImplementedError


class PlaidWebhook(_WebhookModel):
    provider: Literal["plaid"]
    webhook_type: str
    webhook_code: str
    item_id: str
    webhook_id: str | None = None
    error: dict[str, Any] | None = None
    new_transactions: int | None = None
    removed_transactions: list[str] = Field(default_factory=list)
    environment: str | None = None

    @property
    def event_key(self) -> str:
        return f"{self.webhook_type}.{self.webhook_code}"

    @property
    def external_account_id(self) -> str | None:
        return self.item_id

    @property
    def triggers_sync(self) -> bool:
        return self.event_key in PLAID_SYNC_TRIGGERS

    @property
    def is_item_error(self) -> bool:
        return PLAID_EVENT_MAP.get(self.event_key) == FinanceEventType.BANK_ITEM_ERROR

    def to_commands(self, *, body_sha256: str) -> list[IngestCommand]:
        event_type = PLAID_EVENT_MAP.get(self.event_key)
        if event_type is None:
            return []
        if event_type == FinanceEventType.BANK_TX_REVERSED and self.removed_transactions:
            # Same keys the sync engine uses, so webhook and pull converge on one row per removal.
            return [
                removal_command("plaid", RemovedItem(native_id=transaction_id))
                for transaction_id in self.removed_transactions
            ]
        # Redelivery of the same notification must hash to the same key.
        discriminator = self.webhook_id or body_sha256[:32]
        entity_refs: dict[str, Any] = {
            "item_id": self.item_id,
            "webhook_type": self.webhook_type,
            "webhook_code": self.webhook_code,
        }
        if self.error:
            entity_refs["error_code"] = self.error.get("error_code")
        return [
            IngestCommand(
                provider="plaid",
                provider_event_id=f"plaid_{self.webhook_type}_{self.webhook_code}_{self.item_id}_{discriminator}",
                event_type=event_type,
                occurred_at=_utc_now(),
                amount=None,
                currency="usd",
                status="error" if event_type == FinanceEventType.BANK_ITEM_ERROR else "received",
                entity_refs=entity_refs,
                raw_hash=body_sha256,
                metadata={
                    "new_transactions": self.new_transactions,
                    "error_message": (self.error or {}).get("error_message"),
                    "environment": self.environment,
                    "source": "webhook",
                },
            )
        ]


class StripeEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: dict[str, Any] = Field(default_factory=dict)


class StripeWebhook(_WebhookModel):
    provider: Literal["stripe"]
    id: str
    type: str
    created: int | None = None
    account: str | None = None
    livemode: bool = False
    data: StripeEventData = Field(default_factory=StripeEventData)

    @property
    def event_key(self) -> str:
        return self.type

    @property
    def external_account_id(self) -> str | None:
        return self.account

    def _amount(self) -> int | None:
        obj = self.data.object
        if self.type.startswith("invoice."):
            return obj.get("amount_paid", obj.get("amount_due"))
        if self.type.startswith("payment_intent.") or self.type.startswith("payout."):
            return obj.get("amount")
        if self.type.startswith("charge."):
            return obj.get("amount_refunded", obj.get("amount"))
        if self.type == "balance.available":
            available = obj.get("available")
            if isinstance(available, list) and available:
                return sum(int(entry.get("amount") or 0) for entry in available)
        return None

    def _fee(self) -> int | None:
        obj = self.data.object
        if self.type in {"payment_intent.succeeded", "invoice.paid", "invoice.payment_succeeded"}:
            fee = obj.get("application_fee_amount")
            return fee if isinstance(fee, int) else None
        if self.type.startswith("charge."):
            balance_transaction = obj.get("balance_transaction")
            if isinstance(balance_transaction, dict) and isinstance(balance_transaction.get("fee"), int):
                return balance_transaction["fee"]
        return None

    def _entity_refs(self) -> dict[str, Any]:
        obj = self.data.object
        refs: dict[str, Any] = {"stripe_event_id": self.id}
        object_id = obj.get("id")
        if object_id:
            for prefix, key in (
                ("invoice.", "invoice_id"),
                ("payment_intent.", "payment_intent_id"),
                ("charge.", "charge_id"),
                ("payout.", "payout_id"),
            ):
                if self.type.startswith(prefix):
                    refs[key] = object_id
                    break
        customer = obj.get("customer")
        if customer:
            refs["customer_id"] = customer if isinstance(customer, str) else customer.get("id")
        if isinstance(obj.get("payment_intent"), str):
            refs["payment_intent_id"] = obj["payment_intent"]
        return refs

    def to_commands(self, *, body_sha256: str) -> list[IngestCommand]:
        event_type = STRIPE_EVENT_MAP.get(self.type)
        if event_type is None:
            return []
        amount = self._amount()
        return [
            IngestCommand(
                provider="stripe",
                provider_event_id=self.id,
                event_type=event_type,
                occurred_at=_parse_timestamp(self.created),
                # Stripe already reports integer minor units.
                amount=int(amount) if amount is not None else None,
                currency=str(self.data.object.get("currency") or "usd"),
                status="posted",
                entity_refs=self._entity_refs(),
                raw_hash=body_sha256,
                metadata={"stripe_type": self.type, "fee": self._fee(), "livemode": self.livemode},
            )
        ]


class GustoWebhook(_WebhookModel):
    provider: Literal["gusto"]
    event_type: str
    uuid: str | None = None
    resource_uuid: str | None = None
    company_uuid: str | None = None
    timestamp: str | int | None = None
    amount: str | float | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_aliases(cls, data: Any) -> Any:
        # Gusto has shipped both "event_type" and "type", and several resource id names.
        if isinstance(data, dict):
            data = dict(data)
            data.setdefault("event_type", data.get("type"))
            data.setdefault("resource_uuid", data.get("entity_uuid"))
        return data

    @property
    def event_key(self) -> str:
        return self.event_type

    @property
    def external_account_id(self) -> str | None:
        return self.company_uuid

    def to_commands(self, *, body_sha256: str) -> list[IngestCommand]:
        event_type = GUSTO_EVENT_MAP.get(self.event_type)
        if event_type is None:
            return []
        provider_event_id = self.uuid or f"gusto_{self.event_type}_{self.resource_uuid}_{self.timestamp}"
        return [
            IngestCommand(
                provider="gusto",
                provider_event_id=provider_event_id,
                event_type=event_type,
                occurred_at=_parse_timestamp(self.timestamp),
                amount=to_minor_units(self.amount) if self.amount not in (None, "") else None,
                currency="usd",
                status="posted",
                entity_refs={
                    "event_type": self.event_type,
                    "resource_uuid": self.resource_uuid,
                    "company_uuid": self.company_uuid,
                },
                raw_hash=body_sha256,
                metadata={"original_event_type": self.event_type, "source": "webhook"},
            )
        ]


class QboEntity(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    id: str
    operation: str = "Update"
    lastUpdated: str | None = None


class QboDataChangeEvent(BaseModel):
    entities: list[QboEntity] = Field(default_factory=list)


class QboNotification(BaseModel):
    model_config = ConfigDict(extra="allow")

    realmId: str
    dataChangeEvent: QboDataChangeEvent | None = None


class QboWebhook(_WebhookModel):
    provider: Literal["qbo"]
    eventNotifications: list[QboNotification] = Field(default_factory=list)

    @property
    def event_key(self) -> str:
        return "dataChangeEvent"

    @property
    def external_account_id(self) -> str | None:
        return self.eventNotifications[0].realmId if self.eventNotifications else None

    def to_commands(self, *, body_sha256: str) -> list[IngestCommand]:
        commands: list[IngestCommand] = []
        for notification in self.eventNotifications:
            if notification.dataChangeEvent is None:
                continue
            for entity in notification.dataChangeEvent.entities:
                event_type = QBO_EVENT_MAP.get(entity.name)
                if event_type is None:
                    continue
                last_updated = entity.lastUpdated or ""
                commands.append(
                    IngestCommand(
                        provider="qbo",
                        provider_event_id=(
                            f"qbo_{notification.realmId}_{entity.name}_{entity.id}_{entity.operation}_{last_updated}"
                        ),
                        event_type=event_type,
                        occurred_at=_parse_timestamp(entity.lastUpdated),
                        amount=None,
                        currency="usd",
                        status="posted",
                        entity_refs={
                            "entity_name": entity.name,
                            "entity_id": entity.id,
                            "operation": entity.operation,
                            "realm_id": notification.realmId,
                        },
                        raw_hash=body_sha256,
                        metadata={"operation": entity.operation, "source": "webhook"},
                    )
                )
        return commands


class UnhandledWebhook(BaseModel):
    # Acknowledge-only branch for payloads that fail validation.
    provider: str
    reason: str

    @property
    def event_key(self) -> str:
        return "unhandled"

    @property
    def external_account_id(self) -> str | None:
        return None

    @property
    def triggers_sync(self) -> bool:
        return False

    def to_commands(self, *, body_sha256: str) -> list[IngestCommand]:
        return []


ProviderWebhook = Annotated[
    Union[PlaidWebhook, StripeWebhook, GustoWebhook, QboWebhook],
    Field(discriminator="provider"),
]
_webhook_adapter: TypeAdapter[ProviderWebhook] = TypeAdapter(ProviderWebhook)

WebhookPayload = Union[PlaidWebhook, StripeWebhook, GustoWebhook, QboWebhook, UnhandledWebhook]


def parse_webhook(provider: str, payload: Any) -> WebhookPayload:
    """Validate a decoded webhook body into its provider model.

    The route provider is the discriminator; a body that does not match the
    provider's shape becomes ``UnhandledWebhook`` and is acknowledged only.
    """
    if not isinstance(payload, dict):
        return UnhandledWebhook(provider=provider, reason="payload_not_object")
    try:
        return _webhook_adapter.validate_python({**payload, "provider": provider})
    except ValidationError as exc:
        logger.info("webhook_payload_unrecognized provider=%s errors=%s", provider, exc.error_count())
        return UnhandledWebhook(provider=provider, reason="payload_invalid")
