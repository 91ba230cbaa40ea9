from __future__ import annotations

from enum import Enum
from typing import Literal


class FinanceEventType(str, Enum):
    # Closed set of normalized business facts accepted by the ledger.
    BANK_TX_POSTED = "bank_tx_posted"
    BANK_TX_PENDING = "bank_tx_pending"
    BANK_TX_REVERSED = "bank_tx_reversed"
    BANK_BALANCE_UPDATED = "bank_balance_updated"
    BANK_ACCOUNT_LINKED = "bank_account_linked"
    BANK_ITEM_ERROR = "bank_item_error"
    INVOICE_SENT = "invoice_sent"
    INVOICE_PAID = "invoice_paid"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUNDED = "payment_refunded"
    PAYOUT_CREATED = "payout_created"
    PAYOUT_PAID = "payout_paid"
    PAYOUT_FAILED = "payout_failed"
    BALANCE_PENDING_TO_AVAILABLE = "balance_pending_to_available"
    PAYROLL_CALCULATED = "payroll_calculated"
    PAYROLL_SUBMITTED = "payroll_submitted"
    PAYROLL_PAID = "payroll_paid"
    EMPLOYEE_CHANGED = "employee_changed"
    QBO_INVOICE_CHANGED = "qbo_invoice_changed"
    QBO_PAYMENT_CHANGED = "qbo_payment_changed"
    QBO_JOURNAL_POSTED = "qbo_journal_posted"
    QBO_REPORT_REFRESHED = "qbo_report_refreshed"


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class ReceiptStatus(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    DENIED = "DENIED"


class ActorType(str, Enum):
    USER = "USER"
    SYSTEM = "SYSTEM"
    WORKER = "WORKER"


Provider = Literal["plaid", "stripe", "gusto", "qbo"]
SUPPORTED_PROVIDERS: tuple[str, ...] = ("plaid", "stripe", "gusto", "qbo")

# Stream names for cursor-based pulls.
TRANSACTIONS_STREAM = "transactions"

# Receipt types written by the ledger core.
RECEIPT_WEBHOOK_INGESTED = "finance.webhook.ingested"
RECEIPT_SYNC_EXECUTED = "finance.sync.executed"
RECEIPT_BALANCE_FETCHED = "finance.balance.fetched"
RECEIPT_CONNECTION_CREATED = "finance.connection.created"
RECEIPT_CONNECTION_DISCONNECTED = "finance.connection.disconnected"
RECEIPT_CREDENTIAL_ROTATED = "finance.credential.rotated"
