#!/usr/bin/env python3
"""
Simple example of driving a Will through willbridge without HTTP.
"""
import os

from eth_account import Account
from web3 import Web3

from willbridge import (
    ActionEncoder, IntentFactory, IntentKind, LocalSigner, StateCache,
    StubLedgerClient, TransactionLifecycleManager, WillBridgeError
)


def main():
    """
    Demonstrate basic usage of the TransactionLifecycleManager.

    This example shows how to:
    1. Wire a ledger, cache and signer together
    2. Run server-signed intents (set recipient, ping)
    3. Prepare a deposit, sign it as the depositor and submit it
    """
    owner_key = os.environ.get("WILL_PRIVATE_KEY") or Account.create().key
    signer = LocalSigner(owner_key)
    depositor = Account.create()

    ledger = StubLedgerClient(owner=signer.address)
    cache = StateCache(ledger)
    manager = TransactionLifecycleManager(
        ledger=ledger,
        encoder=ActionEncoder(ledger.contract_address),
        cache=cache,
        signer=signer,
    )
    intents = IntentFactory()

    try:
        manager.verify_chain_id()

        recipient = Account.create().address
        result = manager.execute(
            intents.build(IntentKind.SET_RECIPIENT, signer.address, nonce="setup", recipient=recipient)
        ).raise_for_status()
        print(f"Recipient set in {result.tx_hash}")

        result = manager.execute(intents.build(IntentKind.PING, signer.address)).raise_for_status()
        print(f"Pinged in {result.tx_hash}")

        prepared = manager.prepare(
            intents.build(IntentKind.DEPOSIT, depositor.address, amount="0.5")
        ).prepared
        signed = depositor.sign_transaction({
            "to": prepared.to,
            "value": int(prepared.value),
            "data": prepared.data,
            "chainId": prepared.chain_id,
            "nonce": ledger.pending_nonce(depositor.address),
            "gas": 100_000,
            "gasPrice": 10**9,
        })
        result = manager.submit_signed(
            Web3.to_hex(signed.raw_transaction), prepared_id=prepared.prepared_id
        ).raise_for_status()
        print(f"Deposit confirmed in {result.tx_hash}")

        state = cache.get()
        print(f"Owner: {state.owner}")
        print(f"Recipient: {state.recipient}")
        print(f"Last ping: {state.pinged_last}")
        print(f"Contract balance: {ledger.contract_balance} wei")

    except WillBridgeError as e:
        print(f"{e.kind}: {e.detail}")


if __name__ == "__main__":
    main()
