"""
Tests for signed transaction decoding.
"""
import pytest
from eth_account import Account
from web3 import Web3

from willbridge.exceptions import ValidationError
from willbridge.ledger.rawtx import decode_signed_transaction, to_raw_bytes
from conftest import DEPOSITOR_KEY, RECIPIENT, TEST_CHAIN_ID


@pytest.fixture
def account():
    return Account.from_key(DEPOSITOR_KEY)


def test_legacy_transaction(account):
    signed = account.sign_transaction({
        "to": RECIPIENT,
        "value": 12345,
        "data": "0xd0e30db0",
        "chainId": TEST_CHAIN_ID,
        "nonce": 4,
        "gas": 21000,
        "gasPrice": 10**9,
    })

    tx = decode_signed_transaction(Web3.to_hex(signed.raw_transaction))

    assert tx.sender == account.address
    assert tx.to == RECIPIENT
    assert tx.value == 12345
    assert tx.data == "0xd0e30db0"
    assert tx.nonce == 4
    assert tx.chain_id == TEST_CHAIN_ID
    assert tx.tx_hash == Web3.to_hex(signed.hash)


def test_eip1559_transaction(account):
    signed = account.sign_transaction({
        "type": 2,
        "to": RECIPIENT,
        "value": 1,
        "data": "0x",
        "chainId": 11155111,
        "nonce": 0,
        "gas": 21000,
        "maxFeePerGas": 2 * 10**9,
        "maxPriorityFeePerGas": 10**9,
    })

    tx = decode_signed_transaction(bytes(signed.raw_transaction))

    assert tx.sender == account.address
    assert tx.chain_id == 11155111
    assert tx.to == RECIPIENT
    assert tx.value == 1
    assert tx.data == "0x"
    assert tx.tx_hash == Web3.to_hex(signed.hash)


def test_eip2930_transaction(account):
    signed = account.sign_transaction({
        "type": 1,
        "to": RECIPIENT,
        "value": 5,
        "data": "0x",
        "chainId": TEST_CHAIN_ID,
        "nonce": 2,
        "gas": 30000,
        "gasPrice": 10**9,
        "accessList": [],
    })

    tx = decode_signed_transaction(signed.raw_transaction)

    assert tx.nonce == 2
    assert tx.value == 5
    assert tx.chain_id == TEST_CHAIN_ID


@pytest.mark.parametrize("raw", ["", "0x", "0xdeadbeef", "0xzz", "0x05c0", b"\x02\xc0"])
def test_malformed(raw):
    with pytest.raises(ValidationError):
        decode_signed_transaction(raw)


def test_rejects_non_hex_types():
    with pytest.raises(ValidationError):
        to_raw_bytes(1234)


def test_accepts_unprefixed_hex():
    assert to_raw_bytes("abcd") == b"\xab\xcd"
