"""
willbridge - HTTP bridge between clients and the Will dead-man's-switch contract.
"""
from .cache import StateCache
from .config import BridgeConfig, NetworkConfig
from .encoder import ActionEncoder, ContractCall, parse_ether, validate_address
from .exceptions import (
    WillBridgeError, ValidationError, InvalidAddress, InvalidAmount, ChainIdMismatch,
    PreparedExpired, UnknownIntent, EncodingError, LedgerError, LedgerUnreachable,
    LedgerStale, RejectedByNode, Reverted, TimedOut
)
from .gateway import GatewayResponse, RequestGateway
from .intent import Intent, IntentFactory, IntentKind, SignerMode
from .ledger import LedgerClient, StubLedgerClient, Web3LedgerClient, get_ledger_client
from .lifecycle import TransactionLifecycleManager
from .models import ActionResult, ContractState, IntentStatus, PreparedTransaction, TxReceipt
from .nonce_store import NonceStore
from .signer import LocalSigner, Signer
from .version import __version__

__all__ = [
    "StateCache",
    "BridgeConfig",
    "NetworkConfig",
    "ActionEncoder",
    "ContractCall",
    "parse_ether",
    "validate_address",
    "WillBridgeError",
    "ValidationError",
    "InvalidAddress",
    "InvalidAmount",
    "ChainIdMismatch",
    "PreparedExpired",
    "UnknownIntent",
    "EncodingError",
    "LedgerError",
    "LedgerUnreachable",
    "LedgerStale",
    "RejectedByNode",
    "Reverted",
    "TimedOut",
    "GatewayResponse",
    "RequestGateway",
    "Intent",
    "IntentFactory",
    "IntentKind",
    "SignerMode",
    "LedgerClient",
    "StubLedgerClient",
    "Web3LedgerClient",
    "get_ledger_client",
    "TransactionLifecycleManager",
    "ActionResult",
    "ContractState",
    "IntentStatus",
    "PreparedTransaction",
    "TxReceipt",
    "NonceStore",
    "LocalSigner",
    "Signer",
    "__version__",
]
