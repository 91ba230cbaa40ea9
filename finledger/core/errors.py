from __future__ import annotations


class FinLedgerError(Exception):
    """Base error for finledger."""


class ConfigurationError(FinLedgerError):
    """Missing or invalid configuration; always fails closed."""


class EncryptionKeyMissingError(ConfigurationError):
    """Token encryption key is not configured."""


class VaultError(FinLedgerError):
    """Credential vault failure."""


class DecryptionError(VaultError):
    """Ciphertext failed authentication or could not be decoded."""


class CredentialNotFoundError(VaultError):
    """No credential stored for the connection."""


class WebhookVerificationError(FinLedgerError):
    """Inbound webhook could not be authenticated."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class UpstreamError(FinLedgerError):
    """Transient upstream provider failure; the whole sync run is safe to retry."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamRateLimitedError(UpstreamError):
    """Upstream provider rate limited the request."""


class SyncDeadlineExceededError(FinLedgerError):
    """Sync run stopped at a page boundary because its deadline elapsed."""


class ConnectionNotFoundError(FinLedgerError):
    """Connection id does not exist."""


class ReceiptImmutableError(FinLedgerError):
    """Attempted to modify an immutable receipt field."""


class TenantScopeMissingError(FinLedgerError):
    """Governed operation attempted without a tenant scope."""
