"""
Pytest fixtures for the willbridge tests.
"""
import time

import pytest
from eth_account import Account
from web3 import Web3

from willbridge._rate_limited_log import reset_rate_limited_log
from willbridge.app import create_app
from willbridge.cache import StateCache
from willbridge.encoder import ActionEncoder
from willbridge.gateway import RequestGateway
from willbridge.intent import IntentFactory
from willbridge.ledger.stub import StubLedgerClient
from willbridge.lifecycle import TransactionLifecycleManager
from willbridge.nonce_store import NonceStore
from willbridge.signer import LocalSigner

# Constants for testing
TEST_CHAIN_ID = 31337
TEST_RPC_URL = "https://rpc.example.com"
TEST_CONTRACT = "0x1234567890123456789012345678901234567890"
OWNER_KEY = "0x0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef"
DEPOSITOR_KEY = "0x" + "22" * 32
RECIPIENT = Web3.to_checksum_address("0x" + "ab" * 20)
START_TIME = 1_700_000_000


class FakeClock:
    """Manually advanced wall clock"""

    def __init__(self, start: float = START_TIME):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def sign_prepared(account, prepared, nonce=0, chain_id=None, gas=100_000, gas_price=10**9):
    """Sign a prepared descriptor (response dict or PreparedTransaction) the way a wallet would"""
    if not isinstance(prepared, dict):
        prepared = prepared.to_response()
    tx = {
        "to": prepared["to"],
        "value": int(prepared["value"]),
        "data": prepared["data"],
        "chainId": chain_id if chain_id is not None else prepared["chainId"],
        "nonce": nonce,
        "gas": gas,
        "gasPrice": gas_price,
    }
    return Web3.to_hex(account.sign_transaction(tx).raw_transaction)


# Make time.sleep instantaneous so confirmation polling doesn't slow the suite down
@pytest.fixture(autouse=True)
def _fast_sleep(monkeypatch):
    monkeypatch.setattr(time, "sleep", lambda *_a, **_kw: None)


@pytest.fixture(autouse=True)
def _fresh_rate_limited_log():
    reset_rate_limited_log()
    yield
    reset_rate_limited_log()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def owner():
    return Account.from_key(OWNER_KEY)


@pytest.fixture
def depositor():
    return Account.from_key(DEPOSITOR_KEY)


@pytest.fixture
def signer():
    return LocalSigner(OWNER_KEY)


@pytest.fixture
def stub_ledger(clock, owner):
    return StubLedgerClient(owner=owner.address, chain_id=TEST_CHAIN_ID, clock=clock)


@pytest.fixture
def cache(stub_ledger, clock):
    return StateCache(stub_ledger, freshness=3.0, timer=clock)


@pytest.fixture
def nonce_store(tmp_path):
    return NonceStore(str(tmp_path / "nonces.json"))


@pytest.fixture
def intents():
    return IntentFactory()


@pytest.fixture
def manager(stub_ledger, cache, signer, nonce_store, clock):
    return TransactionLifecycleManager(
        ledger=stub_ledger,
        encoder=ActionEncoder(stub_ledger.contract_address),
        cache=cache,
        signer=signer,
        nonce_store=nonce_store,
        prepared_ttl=600,
        grace_period=3600,
        confirmation_timeout=5,
        poll_interval=0.01,
        clock=clock,
    )


@pytest.fixture
def gateway(manager, cache):
    return RequestGateway(manager, cache)


@pytest.fixture
def app(gateway):
    flask_app = create_app(gateway=gateway)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()
