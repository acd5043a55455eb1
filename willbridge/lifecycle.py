"""
TransactionLifecycleManager - drives intents from validation to a terminal state.

Server-signed intents are encoded, signed with the service key, broadcast
and awaited. Client-signed intents stop at AwaitingSignature with a
prepared descriptor; the client's signed bytes are relayed later through
submit_signed. Every intent is tracked under its idempotency key until it
settles and a grace period has passed.
"""
import logging
import secrets
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional, Tuple

from .cache import StateCache
from .encoder import ActionEncoder, ContractCall
from .exceptions import (
    WillBridgeError, ValidationError, ChainIdMismatch, PreparedExpired, UnknownIntent,
    EncodingError, LedgerUnreachable, RejectedByNode, Reverted, TimedOut
)
from .intent import SIGNER_MODES, Intent, SignerMode
from .ledger.base import ConfirmationOutcome, ConfirmationResult, LedgerClient
from .ledger.rawtx import DecodedTransaction, decode_signed_transaction
from .models import (
    ActionResult, IntentStatus, PreparedTransaction, SubmittedTransaction, TxStatus
)
from .nonce_store import NonceStore
from .signer import Signer

# States that answer a repeated request with the existing outcome
LIVE_STATES = frozenset({
    IntentStatus.AWAITING_SIGNATURE,
    IntentStatus.SUBMITTED,
    IntentStatus.TIMED_OUT,
    IntentStatus.CONFIRMED,
    IntentStatus.REVERTED,
})

IN_FLIGHT_STATES = frozenset({IntentStatus.SUBMITTED, IntentStatus.TIMED_OUT})

# A prepared entry whose signed transaction the node refused may be signed again
RESIGNABLE_STATES = frozenset({IntentStatus.AWAITING_SIGNATURE, IntentStatus.REJECTED})

SETTLED_STATES = frozenset({
    IntentStatus.CONFIRMED,
    IntentStatus.REVERTED,
    IntentStatus.REJECTED,
    IntentStatus.EXPIRED,
})

RELAYED_KIND = "SignedTransaction"


@dataclass
class IntentRecord:
    """Mutable tracking entry for one idempotency key"""
    key: str
    kind: str
    caller: str
    mode: SignerMode
    status: IntentStatus
    created_at: float
    updated_at: float
    call: Optional[ContractCall] = None
    prepared: Optional[PreparedTransaction] = None
    snapshot: Optional[Tuple[str, str]] = None
    transaction: Optional[SubmittedTransaction] = None
    error: Optional[WillBridgeError] = None

    @property
    def tx_hash(self) -> Optional[str]:
        if self.transaction is not None:
            return self.transaction.tx_hash
        return self.error.tx_hash if self.error is not None else None

    def to_result(self) -> ActionResult:
        return ActionResult(
            intent_key=self.key,
            kind=self.kind,
            status=self.status,
            tx_hash=self.tx_hash,
            error_kind=self.error.kind if self.error else None,
            detail=self.error.detail if self.error else None,
            reason=getattr(self.error, "reason", None),
            prepared=self.prepared,
        )


class TransactionLifecycleManager:
    """
    Owns every intent from validation to its terminal state.

    Locking:
        - one lock per idempotency key serializes the transition out of
          Validated or AwaitingSignature, so a key is broadcast at most once
        - one signer lock covers nonce assignment, signing, broadcast and the
          watermark update, so two server-signed intents never share a nonce
        - one state lock guards the record table and status changes; no
          ledger I/O happens under it
    """

    def __init__(
        self,
        ledger: LedgerClient,
        encoder: ActionEncoder,
        cache: StateCache,
        signer: Optional[Signer] = None,
        nonce_store: Optional[NonceStore] = None,
        prepared_ttl: float = 600.0,
        grace_period: float = 3600.0,
        confirmation_timeout: float = 120.0,
        poll_interval: float = 0.5,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None
    ):
        self.ledger = ledger
        self.encoder = encoder
        self.cache = cache
        self.signer = signer
        self.nonce_store = nonce_store
        self.prepared_ttl = prepared_ttl
        self.grace_period = grace_period
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

        self._records: Dict[str, IntentRecord] = {}
        self._by_hash: Dict[str, str] = {}
        self._key_locks: Dict[str, threading.Lock] = {}
        self._state_lock = threading.RLock()
        self._signer_lock = threading.Lock()
        self._next_nonce_floor: Dict[str, int] = {}
        self._cancel = threading.Event()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def verify_chain_id(self) -> int:
        """
        Check that the node serves the configured chain

        Returns:
            The chain id reported by the node

        Raises:
            ChainIdMismatch: If the node reports a different chain
            LedgerUnreachable: If the node cannot be reached
        """
        with self._ledger_errors("chain id check"):
            actual = self.ledger.chain_id()
        expected = self.ledger.configured_chain_id
        if actual != expected:
            raise ChainIdMismatch(
                f"Chain ID mismatch: expected {expected}, node reports {actual}"
            )
        self.logger.info(f"Connected to chain {actual}")
        return actual

    def execute(self, intent: Intent) -> ActionResult:
        """
        Run a server-signed intent to a terminal state

        Args:
            intent: Intent whose kind is server-signed

        Returns:
            ActionResult in Confirmed, Reverted, TimedOut or Rejected state.
            A repeated key returns the outcome of the first request.

        Raises:
            ValidationError: On bad parameters or a client-signed kind
            EncodingError: On an ABI mismatch or a signing failure
            LedgerUnreachable: If the node could not be reached before broadcast
        """
        self.evict()
        if intent.signer_mode is not SignerMode.SERVER:
            raise ValidationError(
                f"{intent.kind.value} must be signed by the caller; prepare it instead"
            )
        if self.signer is None:
            raise WillBridgeError("No server signer is configured")

        call = self.encoder.encode(intent)
        with self._locked_key(intent.key):
            record = self._live_record(intent.key)
            if record is None:
                record = self._track(intent, call, IntentStatus.VALIDATED)
                self._submit_server_signed(record)
            else:
                self.logger.debug(f"Reusing {record.status.value} intent {intent.key}")
        return self._resolve(record, self.confirmation_timeout)

    def prepare(self, intent: Intent) -> ActionResult:
        """
        Build the unsigned transaction for a client-signed intent

        The descriptor carries a fresh ``preparedId`` and an ``expiresAt``
        deadline. It goes stale when it expires or when the owner or
        recipient changes before the signed transaction is submitted.

        Returns:
            ActionResult in AwaitingSignature state with ``prepared`` set, or
            the live record already tracked under the same key

        Raises:
            ValidationError: On bad parameters or a server-signed kind
            LedgerUnreachable: If the state snapshot cannot be read
        """
        self.evict()
        if intent.signer_mode is not SignerMode.CLIENT:
            raise ValidationError(f"{intent.kind.value} is signed by the service; execute it instead")

        call = self.encoder.encode(intent)
        with self._locked_key(intent.key):
            record = self._live_record(intent.key)
            if record is not None:
                return self._snapshot(record)

            with self._ledger_errors("state read"):
                state = self.cache.get()
            now = self.clock()
            prepared = self.ledger.build_call(call.to, call.data, call.value).model_copy(
                update={
                    "prepared_id": secrets.token_hex(16),
                    "expires_at": int(now + self.prepared_ttl),
                }
            )
            record = self._track(intent, call, IntentStatus.AWAITING_SIGNATURE)
            with self._state_lock:
                record.prepared = prepared
                record.snapshot = (state.owner, state.recipient)
            self.logger.info(f"Prepared {intent.kind.value} for {intent.caller} ({prepared.prepared_id})")
            return self._snapshot(record)

    def submit_signed(self, raw_tx, prepared_id: Optional[str] = None) -> ActionResult:
        """
        Relay a client-signed transaction and wait for its outcome

        The transaction is bound to a prepared entry by ``prepared_id`` when
        given, otherwise by matching sender, target, value and calldata.
        Client-signed calls such as deposits must bind to a live prepared
        entry; a second signature of a descriptor already broadcast returns
        that outcome instead of paying twice. Other signed contract calls with
        no prepared entry are relayed and tracked under their own hash.

        Args:
            raw_tx: Signed transaction as 0x-hex or bytes
            prepared_id: Optional id from the prepared descriptor

        Raises:
            ValidationError: If the bytes do not decode or target another contract
            ChainIdMismatch: If the transaction is signed for another chain
            PreparedExpired: If the matching prepared entry went stale
            LedgerUnreachable: If the node could not be reached
        """
        self.evict()
        tx = decode_signed_transaction(raw_tx)

        expected = self.ledger.configured_chain_id
        if tx.chain_id != expected:
            raise ChainIdMismatch(
                f"Transaction is signed for chain {tx.chain_id}, this service uses chain {expected}"
            )
        if tx.to is None or tx.to.lower() != self.ledger.contract_address.lower():
            raise ValidationError(
                f"Transaction targets {tx.to}, not the Will contract {self.ledger.contract_address}"
            )

        existing = self._record_for_hash(tx.tx_hash)
        if existing is not None:
            self.logger.debug(f"Transaction {tx.tx_hash} already submitted as {existing.key}")
            return self._resolve(existing, self.confirmation_timeout)

        record = self._match_prepared(tx, prepared_id)
        if record is None:
            kind = self.encoder.kind_of(tx.data)
            if kind is not None and SIGNER_MODES[kind] is SignerMode.CLIENT:
                raise PreparedExpired(
                    f"No live prepared {kind.value} matches this transaction; prepare a new one"
                )
            key = f"{tx.sender.lower()}:signed:{tx.tx_hash}"
            with self._locked_key(key):
                record = self._live_record(key)
                if record is None:
                    record = self._track_relayed(key, tx)
                    self._broadcast_client_signed(record, tx)
        else:
            with self._locked_key(record.key):
                if record.status in RESIGNABLE_STATES:
                    self._ensure_fresh(record)
                    self._broadcast_client_signed(record, tx)
                elif record.status == IntentStatus.EXPIRED:
                    raise PreparedExpired(
                        "The prepared transaction expired; prepare a new one", intent_key=record.key
                    )
        return self._resolve(record, self.confirmation_timeout)

    def status(self, key: str) -> ActionResult:
        """
        Current state of an intent, looked up by idempotency key or tx hash

        An in-flight transaction gets one receipt poll, so a TimedOut intent
        resolves here once its transaction is mined.

        Raises:
            UnknownIntent: If nothing is tracked under the key
        """
        self.evict()
        with self._state_lock:
            record = self._records.get(key)
        if record is None:
            record = self._record_for_hash(key)
        if record is None:
            raise UnknownIntent(f"No tracked intent or transaction for {key}")
        return self._resolve(record, 0)

    def evict(self) -> int:
        """
        Expire stale prepared entries and drop settled ones past the grace period

        Returns:
            Number of records removed
        """
        now = self.clock()
        removed = 0
        with self._state_lock:
            for key, record in list(self._records.items()):
                if (
                    record.status == IntentStatus.AWAITING_SIGNATURE
                    and now >= record.created_at + self.prepared_ttl
                ):
                    self._settle(record, IntentStatus.EXPIRED, PreparedExpired(
                        "The prepared transaction expired before a signed transaction arrived",
                        intent_key=key,
                    ))
                    self.logger.info(f"Prepared intent {key} expired")

                if record.status in SETTLED_STATES and now >= record.updated_at + self.grace_period:
                    del self._records[key]
                    if record.tx_hash and self._by_hash.get(record.tx_hash) == key:
                        del self._by_hash[record.tx_hash]
                    lock = self._key_locks.get(key)
                    if lock is not None and not lock.locked():
                        del self._key_locks[key]
                    removed += 1
        if removed:
            self.logger.debug(f"Evicted {removed} settled intent(s)")
        return removed

    def shutdown(self) -> None:
        """Stop any confirmation waits in progress."""
        self._cancel.set()

    # ------------------------------------------------------------------
    # Record table
    # ------------------------------------------------------------------

    @contextmanager
    def _locked_key(self, key: str) -> Iterator[None]:
        # Eviction may drop an idle lock; retry until we hold the registered one
        while True:
            with self._state_lock:
                lock = self._key_locks.setdefault(key, threading.Lock())
            lock.acquire()
            with self._state_lock:
                if self._key_locks.get(key) is lock:
                    break
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def _live_record(self, key: str) -> Optional[IntentRecord]:
        with self._state_lock:
            record = self._records.get(key)
            if record is not None and record.status in LIVE_STATES:
                return record
            return None

    def _record_for_hash(self, tx_hash: str) -> Optional[IntentRecord]:
        with self._state_lock:
            key = self._by_hash.get(tx_hash.lower())
            return self._records.get(key) if key else None

    def _track(self, intent: Intent, call: ContractCall, status: IntentStatus) -> IntentRecord:
        now = self.clock()
        record = IntentRecord(
            key=intent.key,
            kind=intent.kind.value,
            caller=intent.caller.lower(),
            mode=intent.signer_mode,
            status=status,
            created_at=now,
            updated_at=now,
            call=call,
        )
        with self._state_lock:
            self._records[intent.key] = record
        return record

    def _track_relayed(self, key: str, tx: DecodedTransaction) -> IntentRecord:
        now = self.clock()
        record = IntentRecord(
            key=key,
            kind=RELAYED_KIND,
            caller=tx.sender.lower(),
            mode=SignerMode.CLIENT,
            status=IntentStatus.VALIDATED,
            created_at=now,
            updated_at=now,
        )
        with self._state_lock:
            self._records[key] = record
        return record

    def _discard(self, record: IntentRecord) -> None:
        with self._state_lock:
            if self._records.get(record.key) is record:
                del self._records[record.key]

    def _snapshot(self, record: IntentRecord) -> ActionResult:
        with self._state_lock:
            return record.to_result()

    def _settle(self, record: IntentRecord, status: IntentStatus, error: Optional[WillBridgeError] = None) -> None:
        with self._state_lock:
            record.status = status
            record.error = error
            record.updated_at = self.clock()

    def _mark_submitted(self, record: IntentRecord, tx_hash: str) -> None:
        tx_hash = tx_hash.lower()
        with self._state_lock:
            record.transaction = SubmittedTransaction(
                tx_hash=tx_hash,
                intent_key=record.key,
                submitted_at=self.clock(),
            )
            record.status = IntentStatus.SUBMITTED
            record.error = None
            record.updated_at = self.clock()
            self._by_hash[tx_hash] = record.key
        self.logger.info(f"{record.kind} {record.key} submitted as {tx_hash}")

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    @contextmanager
    def _ledger_errors(self, action: str) -> Iterator[None]:
        try:
            yield
        except WillBridgeError:
            raise
        except Exception as e:
            self.logger.error(f"Unexpected error during {action}: {str(e)}")
            raise LedgerUnreachable(f"{action} failed: {str(e)}") from e

    def _assign_nonce(self, sender: str) -> int:
        with self._ledger_errors("nonce lookup"):
            nonce = self.ledger.pending_nonce(sender)
        if self.nonce_store is not None:
            nonce = max(nonce, self.nonce_store.get(sender))
        return max(nonce, self._next_nonce_floor.get(sender.lower(), 0))

    def _record_nonce(self, sender: str, nonce: int) -> None:
        self._next_nonce_floor[sender.lower()] = nonce + 1
        if self.nonce_store is not None:
            self.nonce_store.advance(sender, nonce + 1)

    def _submit_server_signed(self, record: IntentRecord) -> None:
        call = record.call
        sender = self.signer.address
        prepared = self.ledger.build_call(call.to, call.data, call.value)

        try:
            with self._signer_lock:
                nonce = self._assign_nonce(sender)
                with self._ledger_errors("gas estimation"):
                    gas_fields = self.ledger.estimate(prepared, sender)

                tx = {
                    "to": prepared.to,
                    "value": call.value,
                    "data": prepared.data,
                    "chainId": prepared.chain_id,
                    "nonce": nonce,
                    **gas_fields,
                }
                try:
                    signed = self.signer.sign_transaction(tx)
                except Exception as e:
                    raise EncodingError(f"Failed to sign {record.kind} transaction: {str(e)}") from e

                with self._ledger_errors("broadcast"):
                    tx_hash = self.ledger.broadcast(bytes(signed.raw_transaction))
                self._record_nonce(sender, nonce)
        except Reverted as e:
            self.logger.info(f"{record.kind} {record.key} would revert: {e.reason or e.detail}")
            e.intent_key = record.key
            self._settle(record, IntentStatus.REVERTED, e)
            return
        except RejectedByNode as e:
            self.logger.warning(f"{record.kind} {record.key} rejected by node: {e.detail}")
            e.intent_key = record.key
            self._settle(record, IntentStatus.REJECTED, e)
            return
        except WillBridgeError:
            # Nothing reached the node, so the caller may retry the same key
            self._discard(record)
            raise

        self._mark_submitted(record, tx_hash)

    def _match_prepared(self, tx: DecodedTransaction, prepared_id: Optional[str]) -> Optional[IntentRecord]:
        with self._state_lock:
            if prepared_id:
                record = next(
                    (r for r in self._records.values()
                     if r.prepared is not None and r.prepared.prepared_id == prepared_id),
                    None,
                )
                if record is None:
                    raise UnknownIntent(f"No prepared transaction with id {prepared_id}")
                if tx.sender.lower() != record.caller:
                    raise ValidationError(
                        f"Transaction is signed by {tx.sender}, but was prepared for {record.caller}"
                    )
                if not self._matches(record.prepared, tx):
                    raise ValidationError("Signed transaction does not match the prepared transaction")
                return record

            candidates = sorted(
                (r for r in self._records.values()
                 if r.prepared is not None and r.caller == tx.sender.lower()
                 and self._matches(r.prepared, tx)),
                key=lambda r: r.created_at,
            )
        for record in candidates:
            if record.status in RESIGNABLE_STATES:
                return record
        # Another signature of a descriptor already broadcast answers with that outcome
        for record in candidates:
            if record.status in IN_FLIGHT_STATES or record.status == IntentStatus.CONFIRMED:
                return record
        if any(r.status == IntentStatus.EXPIRED for r in candidates):
            raise PreparedExpired("The prepared transaction expired; prepare a new one")
        return None

    @staticmethod
    def _matches(prepared: PreparedTransaction, tx: DecodedTransaction) -> bool:
        return (
            tx.to is not None
            and prepared.to.lower() == tx.to.lower()
            and int(prepared.value) == tx.value
            and prepared.data.lower() == tx.data.lower()
        )

    def _ensure_fresh(self, record: IntentRecord) -> None:
        if self.clock() >= record.created_at + self.prepared_ttl:
            error = PreparedExpired("The prepared transaction expired; prepare a new one", intent_key=record.key)
            self._settle(record, IntentStatus.EXPIRED, error)
            raise error

        with self._ledger_errors("state read"):
            state = self.cache.get()
        if record.snapshot is not None and (state.owner, state.recipient) != record.snapshot:
            error = PreparedExpired(
                "Contract state changed since the transaction was prepared; prepare a new one",
                intent_key=record.key,
            )
            self._settle(record, IntentStatus.EXPIRED, error)
            raise error

    def _broadcast_client_signed(self, record: IntentRecord, tx: DecodedTransaction) -> None:
        try:
            with self._ledger_errors("broadcast"):
                tx_hash = self.ledger.broadcast(tx.raw)
        except RejectedByNode as e:
            self.logger.warning(f"Signed transaction {tx.tx_hash} rejected by node: {e.detail}")
            e.intent_key = record.key
            e.tx_hash = e.tx_hash or tx.tx_hash
            self._settle(record, IntentStatus.REJECTED, e)
            return
        except WillBridgeError:
            if record.kind == RELAYED_KIND:
                self._discard(record)
            raise
        self._mark_submitted(record, tx_hash)

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    def _resolve(self, record: IntentRecord, timeout: float) -> ActionResult:
        with self._state_lock:
            in_flight = record.status in IN_FLIGHT_STATES and record.transaction is not None
            tx_hash = record.transaction.tx_hash if record.transaction else None

        if in_flight:
            result = self.ledger.await_confirmation(
                tx_hash,
                timeout=timeout,
                poll_interval=self.poll_interval,
                cancel=self._cancel,
            )
            self._apply_confirmation(record, result)
        return self._snapshot(record)

    def _apply_confirmation(self, record: IntentRecord, result: ConfirmationResult) -> None:
        confirmed = False
        with self._state_lock:
            # Another waiter on the same hash may have settled it already
            if record.status not in IN_FLIGHT_STATES:
                return
            tx = record.transaction
            now = self.clock()
            if result.outcome == ConfirmationOutcome.CONFIRMED:
                tx.status = TxStatus.CONFIRMED
                tx.confirmed_at = now
                tx.block_number = result.receipt.block_number
                record.status = IntentStatus.CONFIRMED
                record.error = None
                confirmed = True
            elif result.outcome == ConfirmationOutcome.REVERTED:
                tx.status = TxStatus.FAILED
                tx.block_number = result.receipt.block_number
                tx.revert_reason = result.reason
                record.status = IntentStatus.REVERTED
                record.error = Reverted(
                    f"Transaction reverted: {result.reason or 'no reason given'}",
                    reason=result.reason,
                    intent_key=record.key,
                    tx_hash=tx.tx_hash,
                )
            else:
                record.status = IntentStatus.TIMED_OUT
                record.error = TimedOut(
                    f"No receipt for {tx.tx_hash} yet; check the intent status later",
                    intent_key=record.key,
                    tx_hash=tx.tx_hash,
                )
            record.updated_at = now

        if confirmed:
            self.cache.invalidate()
            self.logger.info(f"{record.kind} {record.key} confirmed in block {tx.block_number}")
