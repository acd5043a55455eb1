"""
Tests for the TransactionLifecycleManager against the stub ledger.
"""
import threading

import pytest
from web3 import Web3

from willbridge.exceptions import (
    WillBridgeError, ValidationError, InvalidAddress, ChainIdMismatch, PreparedExpired,
    UnknownIntent, LedgerUnreachable, RejectedByNode, Reverted, TimedOut
)
from willbridge.encoder import ActionEncoder, WEI_PER_ETHER
from willbridge.intent import IntentKind
from willbridge.ledger.stub import DEFAULT_LIVENESS_WINDOW
from willbridge.lifecycle import TransactionLifecycleManager
from willbridge.models import IntentStatus, TxStatus
from conftest import RECIPIENT, TEST_CHAIN_ID, sign_prepared


def _ping(intents, owner, nonce="req-1"):
    return intents.build(IntentKind.PING, owner.address, nonce=nonce)


def _deposit(intents, depositor, amount="1.5", nonce="dep-1"):
    return intents.build(IntentKind.DEPOSIT, depositor.address, nonce=nonce, amount=amount)


def _set_recipient(manager, intents, owner, recipient=RECIPIENT, nonce="set-1"):
    intent = intents.build(IntentKind.SET_RECIPIENT, owner.address, nonce=nonce, recipient=recipient)
    return manager.execute(intent)


# ─────────────────────────────────────────────────────────────────────────
#  Server-signed intents
# ─────────────────────────────────────────────────────────────────────────

def test_ping_confirms_and_refreshes_liveness(manager, intents, owner, stub_ledger, clock):
    clock.advance(120)
    result = manager.execute(_ping(intents, owner))

    assert result.status == IntentStatus.CONFIRMED
    assert result.tx_hash.startswith("0x")
    assert result.raise_for_status() is result
    assert stub_ledger.read_state().pinged_last == int(clock())


def test_duplicate_key_returns_same_hash_without_rebroadcast(manager, intents, owner, stub_ledger):
    first = manager.execute(_ping(intents, owner))
    second = manager.execute(_ping(intents, owner))

    assert first.tx_hash == second.tx_hash
    assert second.status == IntentStatus.CONFIRMED
    assert stub_ledger.broadcast_count == 1


def test_distinct_keys_use_consecutive_nonces(manager, intents, owner, stub_ledger, nonce_store):
    a = manager.execute(_ping(intents, owner, nonce="a"))
    b = manager.execute(_ping(intents, owner, nonce="b"))

    assert a.tx_hash != b.tx_hash
    assert stub_ledger.broadcast_count == 2
    assert nonce_store.get(owner.address) == 2


def test_confirmed_set_recipient_is_visible_immediately(manager, intents, owner, cache):
    assert not cache.get().has_recipient

    result = _set_recipient(manager, intents, owner)

    assert result.status == IntentStatus.CONFIRMED
    # The cache was fresh before the write; confirmation must invalidate it
    assert cache.get().recipient == RECIPIENT


def test_invalid_recipient_never_touches_ledger(manager, intents, owner, stub_ledger):
    intent = intents.build(IntentKind.SET_RECIPIENT, owner.address, nonce="bad", recipient="0x123")

    with pytest.raises(InvalidAddress):
        manager.execute(intent)

    assert stub_ledger.broadcast_count == 0
    assert stub_ledger.read_count == 0
    with pytest.raises(UnknownIntent):
        manager.status(intent.key)


def test_early_claim_reverts_with_contract_reason(manager, intents, owner, stub_ledger):
    _set_recipient(manager, intents, owner)

    result = manager.execute(intents.build(IntentKind.CLAIM, owner.address, nonce="claim-1"))

    assert result.status == IntentStatus.REVERTED
    assert result.reason == "Owner is still active"
    assert result.error_kind == "Reverted"
    assert stub_ledger.broadcast_count == 1
    with pytest.raises(Reverted) as excinfo:
        result.raise_for_status()
    assert excinfo.value.reason == "Owner is still active"


def test_claim_without_recipient_reverts(manager, intents, owner):
    result = manager.execute(intents.build(IntentKind.CLAIM, owner.address, nonce="claim-1"))

    assert result.status == IntentStatus.REVERTED
    assert result.reason == "Recipient not set"


def test_claim_after_liveness_window_confirms(manager, intents, owner, stub_ledger, clock):
    _set_recipient(manager, intents, owner)
    clock.advance(DEFAULT_LIVENESS_WINDOW + 1)

    result = manager.execute(intents.build(IntentKind.CLAIM, owner.address, nonce="claim-1"))

    assert result.status == IntentStatus.CONFIRMED
    assert stub_ledger.contract_balance == 0


def test_trigger_reminder_confirms(manager, intents, owner, stub_ledger):
    result = manager.execute(intents.build(IntentKind.TRIGGER_REMINDER, owner.address, nonce="r-1"))

    assert result.status == IntentStatus.CONFIRMED
    receipt = stub_ledger.get_receipt(result.tx_hash)
    assert len(receipt.logs) == 1


def test_timed_out_intent_resolves_on_status_check(manager, intents, owner, stub_ledger):
    stub_ledger.auto_mine = False
    manager.confirmation_timeout = 0

    first = manager.execute(_ping(intents, owner))
    assert first.status == IntentStatus.TIMED_OUT
    assert first.tx_hash is not None
    with pytest.raises(TimedOut):
        first.raise_for_status()

    # A retry of the same key keeps waiting on the same transaction
    again = manager.execute(_ping(intents, owner))
    assert again.tx_hash == first.tx_hash
    assert stub_ledger.broadcast_count == 1

    stub_ledger.mine()
    resolved = manager.status(first.intent_key)
    assert resolved.status == IntentStatus.CONFIRMED
    assert resolved.tx_hash == first.tx_hash
    assert manager.status(first.tx_hash).status == IntentStatus.CONFIRMED


def test_shutdown_cancels_confirmation_wait(manager, intents, owner, stub_ledger):
    stub_ledger.auto_mine = False
    manager.confirmation_timeout = 3600
    polls = []
    get_receipt = stub_ledger.get_receipt
    stub_ledger.get_receipt = lambda tx_hash: polls.append(tx_hash) or get_receipt(tx_hash)

    manager.shutdown()
    result = manager.execute(_ping(intents, owner))

    assert result.status == IntentStatus.TIMED_OUT
    assert result.error_kind == "TimedOut"
    assert len(polls) == 1
    assert stub_ledger.broadcast_count == 1

def test_rejected_intent_can_be_retried(manager, intents, owner, stub_ledger, nonce_store):
    # A stale watermark ahead of the node makes the node refuse the nonce
    nonce_store.advance(owner.address, 5)

    rejected = manager.execute(_ping(intents, owner))
    assert rejected.status == IntentStatus.REJECTED
    assert "nonce too high" in rejected.detail
    with pytest.raises(RejectedByNode):
        rejected.raise_for_status()
    # The refused nonce was not recorded as spent
    assert nonce_store.get(owner.address) == 5

    nonce_store.clear()
    retried = manager.execute(_ping(intents, owner))
    assert retried.status == IntentStatus.CONFIRMED
    assert stub_ledger.broadcast_count == 1


def test_unreachable_ledger_leaves_key_free(manager, intents, owner, stub_ledger):
    stub_ledger.unreachable = True
    with pytest.raises(LedgerUnreachable):
        manager.execute(_ping(intents, owner))

    stub_ledger.unreachable = False
    assert manager.execute(_ping(intents, owner)).status == IntentStatus.CONFIRMED


def test_unexpected_ledger_error_is_translated(manager, intents, owner, stub_ledger, monkeypatch):
    def broken(address):
        raise RuntimeError("socket closed")

    monkeypatch.setattr(stub_ledger, "pending_nonce", broken)

    with pytest.raises(LedgerUnreachable) as excinfo:
        manager.execute(_ping(intents, owner))
    assert "socket closed" in excinfo.value.detail


def test_execute_refuses_client_signed_kind(manager, intents, depositor):
    with pytest.raises(ValidationError):
        manager.execute(_deposit(intents, depositor))


def test_execute_without_signer(stub_ledger, cache, intents, owner, clock):
    manager = TransactionLifecycleManager(
        stub_ledger, ActionEncoder(stub_ledger.contract_address), cache, clock=clock
    )
    with pytest.raises(WillBridgeError):
        manager.execute(_ping(intents, owner))


def test_verify_chain_id(manager, stub_ledger):
    assert manager.verify_chain_id() == TEST_CHAIN_ID

    stub_ledger.node_chain_id = 1
    with pytest.raises(ChainIdMismatch):
        manager.verify_chain_id()


# ─────────────────────────────────────────────────────────────────────────
#  Client-signed intents
# ─────────────────────────────────────────────────────────────────────────

def test_prepare_deposit_descriptor(manager, intents, depositor, stub_ledger, clock):
    result = manager.prepare(_deposit(intents, depositor, amount="1.5"))

    assert result.status == IntentStatus.AWAITING_SIGNATURE
    prepared = result.prepared
    assert prepared.value == str(15 * WEI_PER_ETHER // 10)
    assert prepared.chain_id == TEST_CHAIN_ID
    assert prepared.to == stub_ledger.contract_address
    assert prepared.prepared_id
    assert prepared.expires_at == int(clock() + 600)


def test_prepare_refuses_server_signed_kind(manager, intents, owner):
    with pytest.raises(ValidationError):
        manager.prepare(_ping(intents, owner))


def test_prepare_same_key_returns_live_entry(manager, intents, depositor):
    first = manager.prepare(_deposit(intents, depositor))
    second = manager.prepare(_deposit(intents, depositor))

    assert first.prepared.prepared_id == second.prepared.prepared_id


def test_submit_signed_deposit_confirms(manager, intents, depositor, stub_ledger):
    prepared = manager.prepare(_deposit(intents, depositor)).prepared
    raw = sign_prepared(depositor, prepared)

    result = manager.submit_signed(raw, prepared_id=prepared.prepared_id)

    assert result.status == IntentStatus.CONFIRMED
    assert stub_ledger.contract_balance == int(prepared.value)
    assert manager.status(result.intent_key).status == IntentStatus.CONFIRMED

    # Submitting the same bytes again is answered from the record
    duplicate = manager.submit_signed(raw)
    assert duplicate.tx_hash == result.tx_hash
    assert stub_ledger.broadcast_count == 1


def test_submit_matches_prepared_entry_by_content(manager, intents, depositor):
    prepared_result = manager.prepare(_deposit(intents, depositor))
    raw = sign_prepared(depositor, prepared_result.prepared)

    result = manager.submit_signed(raw)

    assert result.intent_key == prepared_result.intent_key
    assert result.kind == IntentKind.DEPOSIT.value


def test_second_signature_of_broadcast_deposit_is_not_sent(manager, intents, depositor, stub_ledger):
    prepared_result = manager.prepare(_deposit(intents, depositor, amount="1"))
    first = manager.submit_signed(sign_prepared(depositor, prepared_result.prepared, nonce=0))

    # A wallet double-click signs the same descriptor again with the next nonce
    second = manager.submit_signed(sign_prepared(depositor, prepared_result.prepared, nonce=1))

    assert first.status == IntentStatus.CONFIRMED
    assert second.intent_key == prepared_result.intent_key
    assert second.tx_hash == first.tx_hash
    assert stub_ledger.broadcast_count == 1
    assert stub_ledger.contract_balance == WEI_PER_ETHER


def test_second_signature_while_in_flight_waits_on_first(manager, intents, depositor, stub_ledger):
    stub_ledger.auto_mine = False
    manager.confirmation_timeout = 0
    prepared = manager.prepare(_deposit(intents, depositor)).prepared

    first = manager.submit_signed(sign_prepared(depositor, prepared, nonce=0))
    second = manager.submit_signed(sign_prepared(depositor, prepared, nonce=1))

    assert first.status == second.status == IntentStatus.TIMED_OUT
    assert second.tx_hash == first.tx_hash
    assert stub_ledger.broadcast_count == 1


def test_owner_deposit_counts_as_ping(manager, intents, owner, stub_ledger, clock):
    clock.advance(500)
    prepared = manager.prepare(_deposit(intents, owner, amount="0.25")).prepared
    raw = sign_prepared(owner, prepared, nonce=stub_ledger.pending_nonce(owner.address))

    assert manager.submit_signed(raw).status == IntentStatus.CONFIRMED
    assert stub_ledger.read_state().pinged_last == int(clock())


def test_expired_prepared_cannot_be_broadcast(manager, intents, depositor, stub_ledger, clock):
    old = manager.prepare(_deposit(intents, depositor)).prepared
    clock.advance(601)
    raw = sign_prepared(depositor, old)

    with pytest.raises(PreparedExpired):
        manager.submit_signed(raw, prepared_id=old.prepared_id)
    with pytest.raises(PreparedExpired):
        manager.submit_signed(raw)
    assert stub_ledger.broadcast_count == 0

    fresh = manager.prepare(_deposit(intents, depositor))
    assert fresh.status == IntentStatus.AWAITING_SIGNATURE
    assert fresh.prepared.prepared_id != old.prepared_id
    assert fresh.prepared.expires_at > old.expires_at


def test_expired_prepared_stays_unbroadcastable_after_eviction(manager, intents, depositor, stub_ledger, clock):
    old = manager.prepare(_deposit(intents, depositor)).prepared
    raw = sign_prepared(depositor, old)

    clock.advance(601)
    manager.evict()
    clock.advance(3601)
    manager.evict()
    assert manager.evict() == 0

    with pytest.raises(PreparedExpired):
        manager.submit_signed(raw)
    assert stub_ledger.broadcast_count == 0
    assert stub_ledger.contract_balance == 0


def test_prepared_goes_stale_when_recipient_changes(manager, intents, owner, depositor, stub_ledger):
    prepared_result = manager.prepare(_deposit(intents, depositor))
    _set_recipient(manager, intents, owner)
    raw = sign_prepared(depositor, prepared_result.prepared)

    with pytest.raises(PreparedExpired):
        manager.submit_signed(raw, prepared_id=prepared_result.prepared.prepared_id)
    assert manager.status(prepared_result.intent_key).status == IntentStatus.EXPIRED
    assert stub_ledger.contract_balance == 0


def test_submit_rejects_other_chain(manager, intents, depositor):
    prepared = manager.prepare(_deposit(intents, depositor)).prepared
    raw = sign_prepared(depositor, prepared, chain_id=1)

    with pytest.raises(ChainIdMismatch):
        manager.submit_signed(raw)


def test_submit_rejects_other_target(manager, depositor):
    raw = sign_prepared(depositor, {
        "to": RECIPIENT, "value": "1", "data": "0x", "chainId": TEST_CHAIN_ID,
    })
    with pytest.raises(ValidationError):
        manager.submit_signed(raw)


def test_submit_rejects_malformed_bytes(manager):
    with pytest.raises(ValidationError):
        manager.submit_signed("0xdeadbeef")


def test_submit_rejects_mismatched_prepared_id(manager, intents, depositor, owner):
    prepared = manager.prepare(_deposit(intents, depositor)).prepared
    # Same payload, wrong signer
    raw = sign_prepared(owner, prepared)

    with pytest.raises(ValidationError):
        manager.submit_signed(raw, prepared_id=prepared.prepared_id)
    with pytest.raises(UnknownIntent):
        manager.submit_signed(raw, prepared_id="does-not-exist")


def test_unprepared_signed_call_is_relayed(manager, intents, owner, stub_ledger):
    call = manager.encoder.encode(_ping(intents, owner))
    raw = sign_prepared(owner, {
        "to": call.to, "value": "0", "data": call.data, "chainId": TEST_CHAIN_ID,
    }, nonce=stub_ledger.pending_nonce(owner.address))

    result = manager.submit_signed(raw)

    assert result.status == IntentStatus.CONFIRMED
    assert result.kind == "SignedTransaction"
    assert ":signed:" in result.intent_key
    assert stub_ledger.broadcast_count == 1


def test_unprepared_signed_deposit_is_refused(manager, intents, depositor, stub_ledger):
    call = manager.encoder.encode(_deposit(intents, depositor, amount="2"))
    raw = sign_prepared(depositor, {
        "to": call.to, "value": str(call.value), "data": call.data, "chainId": TEST_CHAIN_ID,
    })

    with pytest.raises(PreparedExpired):
        manager.submit_signed(raw)
    assert stub_ledger.broadcast_count == 0
    assert stub_ledger.contract_balance == 0


def test_refused_signed_transaction_can_be_signed_again(manager, intents, depositor, stub_ledger):
    prepared = manager.prepare(_deposit(intents, depositor)).prepared

    bad = manager.submit_signed(sign_prepared(depositor, prepared, nonce=7), prepared_id=prepared.prepared_id)
    assert bad.status == IntentStatus.REJECTED
    assert bad.tx_hash is not None

    good = manager.submit_signed(sign_prepared(depositor, prepared, nonce=0), prepared_id=prepared.prepared_id)
    assert good.status == IntentStatus.CONFIRMED
    assert good.intent_key == bad.intent_key


# ─────────────────────────────────────────────────────────────────────────
#  Retention
# ─────────────────────────────────────────────────────────────────────────

def test_settled_records_evicted_after_grace(manager, intents, owner, clock):
    result = manager.execute(_ping(intents, owner))
    clock.advance(3599)
    assert manager.evict() == 0

    clock.advance(2)
    assert manager.evict() == 1
    with pytest.raises(UnknownIntent):
        manager.status(result.intent_key)
    with pytest.raises(UnknownIntent):
        manager.status(result.tx_hash)


def test_expired_prepared_retained_for_grace(manager, intents, depositor, clock):
    prepared_result = manager.prepare(_deposit(intents, depositor))
    clock.advance(601)

    assert manager.status(prepared_result.intent_key).status == IntentStatus.EXPIRED
    clock.advance(3601)
    with pytest.raises(UnknownIntent):
        manager.status(prepared_result.intent_key)


def test_submitted_transaction_record(manager, intents, owner):
    result = manager.execute(_ping(intents, owner))
    record = manager._records[result.intent_key]

    assert record.transaction.status == TxStatus.CONFIRMED
    assert record.transaction.block_number is not None
    assert record.transaction.intent_key == result.intent_key


# ─────────────────────────────────────────────────────────────────────────
#  Concurrency
# ─────────────────────────────────────────────────────────────────────────

def _run_threads(count, target):
    barrier = threading.Barrier(count)
    results, errors = [], []

    def worker(index):
        barrier.wait()
        try:
            results.append(target(index))
        except Exception as e:  # pragma: no cover - surfaced by the assertion below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    assert not errors
    return results


def test_concurrent_same_key_broadcasts_once(manager, intents, owner, stub_ledger):
    results = _run_threads(8, lambda _i: manager.execute(_ping(intents, owner, nonce="shared")))

    assert len({r.tx_hash for r in results}) == 1
    assert all(r.status == IntentStatus.CONFIRMED for r in results)
    assert stub_ledger.broadcast_count == 1


def test_concurrent_distinct_keys_never_share_a_nonce(manager, intents, owner, stub_ledger):
    results = _run_threads(6, lambda i: manager.execute(_ping(intents, owner, nonce=f"k-{i}")))

    # The stub refuses reused nonces, so every confirmation proves a unique nonce
    assert all(r.status == IntentStatus.CONFIRMED for r in results)
    assert len({r.tx_hash for r in results}) == 6
    assert stub_ledger.pending_nonce(owner.address) == 6


def test_recipient_is_checksummed_in_state(manager, intents, owner, cache):
    _set_recipient(manager, intents, owner, recipient=RECIPIENT.lower())
    assert cache.get().recipient == Web3.to_checksum_address(RECIPIENT)
