"""
Ledger module for willbridge.

Provides the LedgerClient interface and its two backends: Web3LedgerClient
for a real JSON-RPC node and StubLedgerClient, an in-process simulation of
the Will contract for development and tests.
"""
import logging
from typing import Optional

from .base import LedgerClient, ConfirmationOutcome, ConfirmationResult
from .rawtx import DecodedTransaction, decode_signed_transaction
from .stub import StubLedgerClient
from .web3_client import Web3LedgerClient

__all__ = [
    'LedgerClient', 'ConfirmationOutcome', 'ConfirmationResult',
    'DecodedTransaction', 'decode_signed_transaction',
    'StubLedgerClient', 'Web3LedgerClient', 'get_ledger_client',
]

logger = logging.getLogger(__name__)


def get_ledger_client(config, owner: Optional[str] = None) -> LedgerClient:
    """
    Build the ledger backend selected by the configuration.

    Args:
        config: BridgeConfig instance
        owner: Owner address for the stub backend's simulated contract

    Returns:
        LedgerClient implementation

    Raises:
        ValueError: If the backend name is unknown or the stub has no owner
    """
    if config.ledger_backend == "web3":
        logger.info(f"Using web3 ledger backend at {config.rpc_url}")
        return Web3LedgerClient(
            rpc_url=config.rpc_url,
            contract_address=config.contract_address,
            chain_id=config.chain_id,
            max_sync_lag=config.max_sync_lag,
            retry_count=config.retry_count,
            timeout=config.http_timeout,
        )
    if config.ledger_backend == "stub":
        if not owner:
            raise ValueError("The stub ledger needs an owner address")
        logger.info("Using in-process stub ledger backend")
        return StubLedgerClient(
            owner=owner,
            contract_address=config.contract_address,
            chain_id=config.chain_id,
            max_sync_lag=config.max_sync_lag,
        )
    raise ValueError(f"Unknown ledger backend: {config.ledger_backend}")
