from __future__ import annotations

from finledger.domain.events import FinanceEventType
from finledger.services.sync.commands import removal_event_id
from finledger.services.webhooks.payloads import (
    GustoWebhook,
    PlaidWebhook,
    QboWebhook,
    StripeWebhook,
    UnhandledWebhook,
    parse_webhook,
)

BODY_HASH = "f" * 64


def test_plaid_event_id_is_stable_across_redelivery() -> None:
    payload = {"webhook_type": "ITEM", "webhook_code": "ERROR", "item_id": "item-1", "error": {"error_code": "ITEM_LOGIN_REQUIRED"}}
    first = parse_webhook("plaid", payload).to_commands(body_sha256=BODY_HASH)
    second = parse_webhook("plaid", dict(payload)).to_commands(body_sha256=BODY_HASH)
    assert len(first) == 1
    assert first[0].provider_event_id == second[0].provider_event_id
    assert first[0].event_type == FinanceEventType.BANK_ITEM_ERROR
    assert first[0].status == "error"
    assert first[0].entity_refs["error_code"] == "ITEM_LOGIN_REQUIRED"
    assert first[0].amount is None


def test_plaid_webhook_id_takes_precedence_over_body_hash() -> None:
    payload = {"webhook_type": "ITEM", "webhook_code": "ERROR", "item_id": "item-1", "webhook_id": "wh-9"}
    commands = parse_webhook("plaid", payload).to_commands(body_sha256=BODY_HASH)
    assert commands[0].provider_event_id == "plaid_ITEM_ERROR_item-1_wh-9"


def test_plaid_removed_transactions_share_sync_keys() -> None:
    webhook = parse_webhook(
        "plaid",
        {
            "webhook_type": "TRANSACTIONS",
            "webhook_code": "TRANSACTIONS_REMOVED",
            "item_id": "item-1",
            "removed_transactions": ["tx_1", "tx_2"],
        },
    )
    commands = webhook.to_commands(body_sha256=BODY_HASH)
    assert [command.provider_event_id for command in commands] == [
        removal_event_id("plaid", "tx_1"),
        removal_event_id("plaid", "tx_2"),
    ]
    assert all(command.event_type == FinanceEventType.BANK_TX_REVERSED for command in commands)
    assert commands[0].entity_refs["reverses_provider_event_id"] == "plaid_tx_tx_1"


def test_plaid_sync_triggers() -> None:
    webhook = parse_webhook(
        "plaid",
        {"webhook_type": "TRANSACTIONS", "webhook_code": "SYNC_UPDATES_AVAILABLE", "item_id": "item-1"},
    )
    assert isinstance(webhook, PlaidWebhook)
    assert webhook.triggers_sync
    assert webhook.external_account_id == "item-1"
    assert webhook.event_key == "TRANSACTIONS.SYNC_UPDATES_AVAILABLE"


def test_plaid_unknown_code_produces_no_commands() -> None:
    webhook = parse_webhook("plaid", {"webhook_type": "AUTH", "webhook_code": "AUTOMATICALLY_VERIFIED", "item_id": "i"})
    assert isinstance(webhook, PlaidWebhook)
    assert webhook.to_commands(body_sha256=BODY_HASH) == []
    assert not webhook.triggers_sync


def test_stripe_payment_intent_keeps_minor_units_and_refs() -> None:
    webhook = parse_webhook(
        "stripe",
        {
            "id": "evt_1",
            "type": "payment_intent.succeeded",
            "created": 1788000000,
            "data": {
                "object": {
                    "id": "pi_1",
                    "amount": 12345,
                    "currency": "EUR",
                    "customer": "cus_1",
                    "application_fee_amount": 120,
                }
            },
        },
    )
    assert isinstance(webhook, StripeWebhook)
    (command,) = webhook.to_commands(body_sha256=BODY_HASH)
    assert command.provider_event_id == "evt_1"
    assert command.event_type == FinanceEventType.PAYMENT_SUCCEEDED
    assert command.amount == 12345
    assert command.currency == "EUR"
    assert command.entity_refs == {"stripe_event_id": "evt_1", "payment_intent_id": "pi_1", "customer_id": "cus_1"}
    # Fees are reported alongside the payment, not ledgered as their own event.
    assert command.metadata["fee"] == 120
    assert command.occurred_at.year == 2026


def test_stripe_refund_uses_refunded_amount() -> None:
    webhook = parse_webhook(
        "stripe",
        {
            "id": "evt_2",
            "type": "charge.refunded",
            "data": {"object": {"id": "ch_1", "amount": 5000, "amount_refunded": 2000, "payment_intent": "pi_1"}},
        },
    )
    (command,) = webhook.to_commands(body_sha256=BODY_HASH)
    assert command.event_type == FinanceEventType.PAYMENT_REFUNDED
    assert command.amount == 2000
    assert command.entity_refs["charge_id"] == "ch_1"
    assert command.entity_refs["payment_intent_id"] == "pi_1"


def test_gusto_accepts_type_alias() -> None:
    webhook = parse_webhook(
        "gusto",
        {
            "type": "payroll.processed",
            "entity_uuid": "payroll-1",
            "company_uuid": "company-1",
            "timestamp": "2026-09-15T10:00:00Z",
            "amount": "1520.10",
        },
    )
    assert isinstance(webhook, GustoWebhook)
    assert webhook.external_account_id == "company-1"
    (command,) = webhook.to_commands(body_sha256=BODY_HASH)
    assert command.event_type == FinanceEventType.PAYROLL_PAID
    assert command.amount == 152010
    assert command.entity_refs["resource_uuid"] == "payroll-1"
    assert command.provider_event_id == "gusto_payroll.processed_payroll-1_2026-09-15T10:00:00Z"


def test_qbo_emits_one_command_per_known_entity() -> None:
    webhook = parse_webhook(
        "qbo",
        {
            "eventNotifications": [
                {
                    "realmId": "realm-1",
                    "dataChangeEvent": {
                        "entities": [
                            {"name": "Invoice", "id": "130", "operation": "Create", "lastUpdated": "2026-09-15T10:00:00Z"},
                            {"name": "Payment", "id": "131", "operation": "Update"},
                            {"name": "Customer", "id": "7"},
                        ]
                    },
                }
            ]
        },
    )
    assert isinstance(webhook, QboWebhook)
    assert webhook.external_account_id == "realm-1"
    commands = webhook.to_commands(body_sha256=BODY_HASH)
    assert [command.event_type for command in commands] == [
        FinanceEventType.QBO_INVOICE_CHANGED,
        FinanceEventType.QBO_PAYMENT_CHANGED,
    ]
    assert commands[0].provider_event_id == "qbo_realm-1_Invoice_130_Create_2026-09-15T10:00:00Z"


def test_invalid_shape_is_acknowledged_only() -> None:
    webhook = parse_webhook("stripe", {"unexpected": True})
    assert isinstance(webhook, UnhandledWebhook)
    assert webhook.reason == "payload_invalid"
    assert webhook.to_commands(body_sha256=BODY_HASH) == []

    not_object = parse_webhook("plaid", ["a", "b"])
    assert isinstance(not_object, UnhandledWebhook)
    assert not_object.reason == "payload_not_object"
