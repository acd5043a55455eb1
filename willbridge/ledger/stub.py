"""
Stub ledger backend.

Simulates a node hosting the Will contract entirely in-process. It is used
for local development (``WILL_LEDGER_BACKEND=stub``) and by the test suite.
Signed transactions are decoded and their senders recovered exactly as a
real node would, so the signing paths are exercised end to end.
"""
import logging
import threading
import time
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Tuple

from eth_abi import decode
from web3 import Web3

from .abi import WILL_ABI, function_signature
from .base import LedgerClient
from .rawtx import decode_signed_transaction
from ..exceptions import (
    LedgerStale, LedgerUnreachable, RejectedByNode, Reverted, ValidationError
)
from ..models import ContractState, PreparedTransaction, TxReceipt, ZERO_ADDRESS

logger = logging.getLogger(__name__)

DEFAULT_CONTRACT_ADDRESS = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
DEFAULT_LIVENESS_WINDOW = 30 * 24 * 3600
DEFAULT_BALANCE_WEI = 100 * 10**18
STUB_GAS = 100_000
STUB_GAS_PRICE = 1_000_000_000

REMIND_USER_TOPIC = Web3.to_hex(Web3.keccak(text="remindUser(address)"))

_SELECTORS = {
    Web3.to_hex(Web3.keccak(text=function_signature(entry))[:4]): entry
    for entry in WILL_ABI
    if entry["type"] == "function" and entry["stateMutability"] != "view"
}


class _ContractStorage:
    def __init__(self, owner: str, start_time: int):
        self.owner = owner
        self.recipient = ZERO_ADDRESS
        self.start_time = start_time
        self.pinged_last = start_time
        self.balance = 0

    def copy(self) -> "_ContractStorage":
        clone = _ContractStorage(self.owner, self.start_time)
        clone.recipient = self.recipient
        clone.pinged_last = self.pinged_last
        clone.balance = self.balance
        return clone


class StubLedgerClient(LedgerClient):
    """
    In-process ledger hosting a simulated Will contract.

    Contract rules: only the owner may set or change the recipient or ping;
    a deposit by the owner counts as a ping; claim succeeds once the owner
    has been silent for longer than the liveness window and pays the whole
    balance to the recipient; triggerReminder emits remindUser(owner).
    """

    def __init__(
        self,
        owner: str,
        contract_address: str = DEFAULT_CONTRACT_ADDRESS,
        chain_id: int = 31337,
        liveness_window: int = DEFAULT_LIVENESS_WINDOW,
        clock: Callable[[], float] = time.time,
        auto_mine: bool = True,
        max_sync_lag: int = 5,
        logger: Optional[logging.Logger] = None
    ):
        super().__init__(contract_address, chain_id, logger=logger)
        self.clock = clock
        self.liveness_window = liveness_window
        self.auto_mine = auto_mine
        self.max_sync_lag = max_sync_lag
        self.node_chain_id = chain_id

        # Failure injection for tests
        self.unreachable = False
        self.sync_lag = 0

        self.read_count = 0
        self.broadcast_count = 0

        self._lock = threading.RLock()
        self._storage = _ContractStorage(Web3.to_checksum_address(owner), int(clock()))
        self._balances: Dict[str, int] = defaultdict(lambda: DEFAULT_BALANCE_WEI)
        self._nonces: Dict[str, int] = defaultdict(int)
        self._pending: List[Tuple[str, str, Optional[str], int, str]] = []
        self._receipts: Dict[str, TxReceipt] = {}
        self._reasons: Dict[str, str] = {}
        self._block_number = 1

    # ------------------------------------------------------------------
    # Simulated contract
    # ------------------------------------------------------------------

    def _execute(self, storage: _ContractStorage, sender: str, value: int, data: str) -> Tuple[Optional[str], List[Dict], List[Tuple[str, int]]]:
        """Run a call against storage. Returns (revert reason or None, logs, payouts)."""
        payload = bytes.fromhex(data[2:]) if data and data != "0x" else b""
        selector = Web3.to_hex(payload[:4])
        entry = _SELECTORS.get(selector)
        if entry is None:
            return "function selector was not recognized", [], []
        if value and entry["stateMutability"] != "payable":
            return "non-payable function", [], []

        name = entry["name"]
        now = int(self.clock())

        if name in ("setRecipient", "changeRecipient"):
            if sender != storage.owner:
                return "Only owner", [], []
            (recipient,) = decode(["address"], payload[4:])
            storage.recipient = Web3.to_checksum_address(recipient)
        elif name == "ping":
            if sender != storage.owner:
                return "Only owner", [], []
            storage.pinged_last = now
        elif name == "deposit":
            if value <= 0:
                return "Deposit must be positive", [], []
            storage.balance += value
            if sender == storage.owner:
                storage.pinged_last = now
        elif name == "claim":
            if storage.recipient == ZERO_ADDRESS:
                return "Recipient not set", [], []
            if now <= storage.pinged_last + self.liveness_window:
                return "Owner is still active", [], []
            payout = [(storage.recipient, storage.balance)]
            storage.balance = 0
            return None, [], payout
        elif name == "triggerReminder":
            topic = "0x" + "0" * 24 + storage.owner[2:].lower()
            return None, [{
                "address": self.contract_address,
                "topics": [REMIND_USER_TOPIC, topic],
                "data": "0x",
            }], []
        return None, [], []

    def mine(self) -> int:
        """
        Mine every pending transaction into one block

        Returns:
            Number of transactions mined
        """
        with self._lock:
            mined = len(self._pending)
            if not mined:
                return 0
            self._block_number += 1
            block_hash = Web3.to_hex(Web3.keccak(text=f"stub-block-{self._block_number}"))
            for tx_hash, sender, to, value, data in self._pending:
                logs: List[Dict] = []
                reason = None
                if to == self.contract_address:
                    scratch = self._storage.copy()
                    reason, logs, payouts = self._execute(scratch, sender, value, data)
                    if reason is None:
                        self._storage = scratch
                        for payee, amount in payouts:
                            self._balances[payee] += amount
                elif to is not None:
                    self._balances[to] += value
                if reason is None:
                    self._balances[sender] -= value
                else:
                    self._reasons[tx_hash] = reason
                self._receipts[tx_hash] = TxReceipt(
                    tx_hash=tx_hash,
                    block_number=self._block_number,
                    block_hash=block_hash,
                    status=0 if reason else 1,
                    gas_used=STUB_GAS // 2,
                    from_address=sender,
                    to_address=to,
                    logs=logs,
                )
            self._pending = []
            self.logger.debug(f"Stub mined {mined} transaction(s) in block {self._block_number}")
            return mined

    def fund(self, address: str, wei: int) -> None:
        with self._lock:
            self._balances[Web3.to_checksum_address(address)] = wei

    def balance_of(self, address: str) -> int:
        with self._lock:
            return self._balances[Web3.to_checksum_address(address)]

    @property
    def contract_balance(self) -> int:
        with self._lock:
            return self._storage.balance

    # ------------------------------------------------------------------
    # LedgerClient interface
    # ------------------------------------------------------------------

    def _check_reachable(self) -> None:
        if self.unreachable:
            raise LedgerUnreachable("Stub ledger is marked unreachable")

    def chain_id(self) -> int:
        self._check_reachable()
        return self.node_chain_id

    def read_state(self) -> ContractState:
        self._check_reachable()
        if self.sync_lag > self.max_sync_lag:
            raise LedgerStale(f"Node is {self.sync_lag} blocks behind head (tolerance {self.max_sync_lag})")
        with self._lock:
            self.read_count += 1
            s = self._storage
            return ContractState(
                owner=s.owner,
                recipient=s.recipient,
                start_time=s.start_time,
                pinged_last=s.pinged_last,
            )

    def pending_nonce(self, address: str) -> int:
        self._check_reachable()
        with self._lock:
            return self._nonces[Web3.to_checksum_address(address)]

    def estimate(self, call: PreparedTransaction, sender: str) -> Dict[str, int]:
        self._check_reachable()
        with self._lock:
            if call.to == self.contract_address:
                reason, _, _ = self._execute(self._storage.copy(), Web3.to_checksum_address(sender), int(call.value), call.data)
                if reason is not None:
                    raise Reverted(f"Call would revert: {reason}", reason=reason)
        return {"gas": STUB_GAS, "gasPrice": STUB_GAS_PRICE}

    def broadcast(self, signed_tx: bytes) -> str:
        self._check_reachable()
        try:
            tx = decode_signed_transaction(signed_tx)
        except ValidationError as e:
            raise RejectedByNode(f"Node rejected transaction: {e.detail}")

        with self._lock:
            if tx.chain_id != self.node_chain_id:
                raise RejectedByNode(f"Node rejected transaction: invalid chain id {tx.chain_id}")
            if tx.tx_hash in self._receipts or any(p[0] == tx.tx_hash for p in self._pending):
                raise RejectedByNode("Node rejected transaction: already known")
            expected = self._nonces[tx.sender]
            if tx.nonce < expected:
                raise RejectedByNode(f"Node rejected transaction: nonce too low ({tx.nonce} < {expected})")
            if tx.nonce > expected:
                raise RejectedByNode(f"Node rejected transaction: nonce too high ({tx.nonce} > {expected})")
            if tx.value > self._balances[tx.sender]:
                raise RejectedByNode("Node rejected transaction: insufficient funds for transfer")

            self._nonces[tx.sender] = expected + 1
            self._pending.append((tx.tx_hash, tx.sender, tx.to, tx.value, tx.data))
            self.broadcast_count += 1
            self.logger.info(f"Transaction sent: {tx.tx_hash}")
            if self.auto_mine:
                self.mine()
            return tx.tx_hash

    def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        self._check_reachable()
        with self._lock:
            return self._receipts.get(tx_hash)

    def revert_reason(self, tx_hash: str) -> Optional[str]:
        with self._lock:
            return self._reasons.get(tx_hash)
