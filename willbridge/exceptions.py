"""
Exceptions for the willbridge service.

Every error that can reach a caller carries a machine-readable ``kind``
and a human-readable ``detail``. Transport exceptions from web3/requests
are translated into this taxonomy before leaving the ledger layer.
"""
from typing import Optional


class WillBridgeError(Exception):
    """Base exception for all willbridge errors."""

    kind = "WillBridgeError"
    http_status = 500

    def __init__(self, detail: str, intent_key: Optional[str] = None, tx_hash: Optional[str] = None):
        self.detail = detail
        self.intent_key = intent_key
        self.tx_hash = tx_hash
        super().__init__(detail)


class ValidationError(WillBridgeError):
    """Malformed client input. Never retried server-side."""

    kind = "ValidationError"
    http_status = 400


class InvalidAddress(ValidationError):
    """Raised when an address is malformed or the zero address."""

    kind = "InvalidAddress"


class InvalidAmount(ValidationError):
    """Raised when a deposit amount is not a positive exact ETH value."""

    kind = "InvalidAmount"


class ChainIdMismatch(ValidationError):
    """Raised when a transaction or node belongs to another network."""

    kind = "ChainIdMismatch"


class PreparedExpired(ValidationError):
    """Raised when a prepared transaction is past its validity window."""

    kind = "PreparedExpired"
    http_status = 409


class UnknownIntent(ValidationError):
    """Raised when a status lookup names no tracked intent or transaction."""

    kind = "UnknownIntent"
    http_status = 404


class EncodingError(WillBridgeError):
    """Internal ABI mismatch or malformed call parameters."""

    kind = "EncodingError"
    http_status = 500


class LedgerError(WillBridgeError):
    """Base exception for failures reported by or about the ledger node."""

    kind = "LedgerError"
    http_status = 502


class LedgerUnreachable(LedgerError):
    """Transient network fault. Safe to retry reads, not writes."""

    kind = "LedgerUnreachable"
    http_status = 503


class LedgerStale(LedgerUnreachable):
    """Raised when the node is too far behind the chain head."""

    kind = "LedgerStale"


class RejectedByNode(LedgerError):
    """The node refused the transaction (signature, nonce or funds)."""

    kind = "RejectedByNode"
    http_status = 422


class Reverted(LedgerError):
    """The call executed but the contract rejected it."""

    kind = "Reverted"
    http_status = 422

    def __init__(
        self,
        detail: str,
        reason: Optional[str] = None,
        intent_key: Optional[str] = None,
        tx_hash: Optional[str] = None,
    ):
        self.reason = reason
        super().__init__(detail, intent_key=intent_key, tx_hash=tx_hash)


class TimedOut(LedgerError):
    """No receipt within the wait budget. The outcome is still unknown."""

    kind = "TimedOut"
    http_status = 202
