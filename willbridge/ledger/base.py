"""
Ledger client interface.

This module defines the contract every ledger backend follows: reading the
Will's state, building unsigned calls, broadcasting signed transactions and
awaiting their confirmation. The web3 backend talks to a real node; the
stub backend simulates one in-process.
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any

from web3 import Web3

from .._rate_limited_log import rate_limited_log
from ..exceptions import EncodingError, LedgerError
from ..models import ContractState, PreparedTransaction, TxReceipt

logger = logging.getLogger(__name__)


class ConfirmationOutcome(str, Enum):
    CONFIRMED = "Confirmed"
    REVERTED = "Reverted"
    TIMED_OUT = "TimedOut"


@dataclass(frozen=True)
class ConfirmationResult:
    """
    Result of waiting for a transaction.

    Exactly one of the variants applies: CONFIRMED carries the receipt,
    REVERTED carries the receipt and the revert reason if one could be
    recovered, TIMED_OUT carries neither.
    """
    outcome: ConfirmationOutcome
    tx_hash: str
    receipt: Optional[TxReceipt] = None
    reason: Optional[str] = None

    @classmethod
    def confirmed(cls, tx_hash: str, receipt: TxReceipt) -> "ConfirmationResult":
        return cls(ConfirmationOutcome.CONFIRMED, tx_hash, receipt=receipt)

    @classmethod
    def reverted(cls, tx_hash: str, receipt: TxReceipt, reason: Optional[str]) -> "ConfirmationResult":
        return cls(ConfirmationOutcome.REVERTED, tx_hash, receipt=receipt, reason=reason)

    @classmethod
    def timed_out(cls, tx_hash: str) -> "ConfirmationResult":
        return cls(ConfirmationOutcome.TIMED_OUT, tx_hash)


class LedgerClient(ABC):
    """
    Abstract base class for ledger backends.

    Every method except build_call performs I/O against the node and may
    block. Implementations translate their transport errors into the
    willbridge exception taxonomy.
    """

    def __init__(self, contract_address: str, chain_id: int, logger: Optional[logging.Logger] = None):
        if not Web3.is_address(contract_address):
            raise ValueError(f"Invalid contract address: {contract_address}")
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.configured_chain_id = chain_id
        self.logger = logger or logging.getLogger(__name__)

    @abstractmethod
    def chain_id(self) -> int:
        """
        Chain id reported by the node.

        Raises:
            LedgerUnreachable: On network error
        """

    @abstractmethod
    def read_state(self) -> ContractState:
        """
        Read owner, recipient, startTime and pingedLast from the contract.

        Raises:
            LedgerUnreachable: On network error
            LedgerStale: If the node lags the chain head beyond tolerance
        """

    @abstractmethod
    def pending_nonce(self, address: str) -> int:
        """Next nonce for an address, counting transactions in the pool."""

    @abstractmethod
    def estimate(self, call: PreparedTransaction, sender: str) -> Dict[str, int]:
        """
        Gas fields for a server-signed call.

        Raises:
            Reverted: If simulating the call shows it would revert
            LedgerUnreachable: On network error
        """

    @abstractmethod
    def broadcast(self, signed_tx: bytes) -> str:
        """
        Broadcast a signed transaction and return its hash.

        Raises:
            RejectedByNode: If the node refuses the transaction
            LedgerUnreachable: On network error
        """

    @abstractmethod
    def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        """Receipt for a mined transaction, or None while it is pending."""

    @abstractmethod
    def revert_reason(self, tx_hash: str) -> Optional[str]:
        """Best-effort revert reason for a failed transaction."""

    def build_call(self, to: str, data: str, value: int = 0) -> PreparedTransaction:
        """
        Build an unsigned transaction descriptor. Pure, no I/O.

        Args:
            to: Target address
            data: 0x-prefixed calldata
            value: Value in wei

        Returns:
            PreparedTransaction for the configured chain

        Raises:
            EncodingError: If any input is malformed
        """
        if not isinstance(to, str) or not Web3.is_address(to):
            raise EncodingError(f"Invalid call target: {to!r}")
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise EncodingError(f"Call value must be a non-negative integer wei amount, got {value!r}")
        if not isinstance(data, str) or not data.startswith("0x"):
            raise EncodingError("Call data must be a 0x-prefixed hex string")
        try:
            bytes.fromhex(data[2:])
        except ValueError as e:
            raise EncodingError(f"Call data is not valid hex: {str(e)}")

        return PreparedTransaction(
            to=Web3.to_checksum_address(to),
            value=str(value),
            data=data.lower(),
            chain_id=self.configured_chain_id,
        )

    def await_confirmation(
        self,
        tx_hash: str,
        timeout: float = 120,
        poll_interval: float = 0.5,
        cancel: Optional[threading.Event] = None
    ) -> ConfirmationResult:
        """
        Poll for a transaction receipt until it arrives or the budget runs out

        Args:
            tx_hash: Hash returned by broadcast
            timeout: Wait budget in seconds
            poll_interval: Delay between polls in seconds
            cancel: Optional event that stops polling early

        Returns:
            ConfirmationResult; TIMED_OUT leaves the transaction pending
        """
        deadline = time.monotonic() + max(timeout, 0)
        while True:
            try:
                receipt = self.get_receipt(tx_hash)
            except LedgerError as e:
                receipt = None
                rate_limited_log(f"Receipt poll for {tx_hash} failed: {e.detail}", "warning", self.logger)

            if receipt is not None:
                if receipt.succeeded:
                    self.logger.debug(f"Transaction {tx_hash} confirmed in block {receipt.block_number}")
                    return ConfirmationResult.confirmed(tx_hash, receipt)
                try:
                    reason = self.revert_reason(tx_hash)
                except LedgerError:
                    reason = None
                self.logger.info(f"Transaction {tx_hash} reverted: {reason or 'no reason'}")
                return ConfirmationResult.reverted(tx_hash, receipt, reason)

            if cancel is not None and cancel.is_set():
                return ConfirmationResult.timed_out(tx_hash)
            if time.monotonic() >= deadline:
                self.logger.warning(f"No receipt for {tx_hash} within {timeout}s")
                return ConfirmationResult.timed_out(tx_hash)
            time.sleep(poll_interval)

    def close(self) -> None:
        """Release any open connections."""
