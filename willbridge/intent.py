"""
Intents: logical requests to mutate the Will's state.
"""
import itertools
import threading
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, Optional


class IntentKind(str, Enum):
    SET_RECIPIENT = "SetRecipient"
    CHANGE_RECIPIENT = "ChangeRecipient"
    PING = "Ping"
    DEPOSIT = "Deposit"
    CLAIM = "Claim"
    TRIGGER_REMINDER = "TriggerReminder"


class SignerMode(str, Enum):
    """Who authorizes the transaction for an intent"""
    SERVER = "ServerSigned"
    CLIENT = "ClientSigned"


# Deposits move the caller's own funds, so only the caller can sign them
SIGNER_MODES: Dict[IntentKind, SignerMode] = {
    IntentKind.SET_RECIPIENT: SignerMode.SERVER,
    IntentKind.CHANGE_RECIPIENT: SignerMode.SERVER,
    IntentKind.PING: SignerMode.SERVER,
    IntentKind.DEPOSIT: SignerMode.CLIENT,
    IntentKind.CLAIM: SignerMode.SERVER,
    IntentKind.TRIGGER_REMINDER: SignerMode.SERVER,
}


@dataclass(frozen=True)
class Intent:
    """
    A requested state-mutating action.

    Attributes:
        kind: Which contract action is requested
        caller: Address on whose behalf the request is made
        nonce: Caller-supplied request id, or an allocated counter value
        params: Kind-specific parameters (``recipient`` or ``amount``)
    """
    kind: IntentKind
    caller: str
    nonce: str
    params: Optional[Dict[str, Any]] = None

    @property
    def signer_mode(self) -> SignerMode:
        return SIGNER_MODES[self.kind]

    @property
    def key(self) -> str:
        """Idempotency key: caller + kind + nonce."""
        return f"{self.caller.lower()}:{self.kind.value}:{self.nonce}"

    def param(self, name: str) -> Any:
        return (self.params or {}).get(name)


class IntentFactory:
    """
    Builds intents, allocating a per-caller counter nonce when the caller
    does not supply one. Counter nonces are prefixed ``auto-`` so they never
    collide with caller-supplied request ids.
    """

    def __init__(self):
        self._counters: Dict[str, Iterator[int]] = defaultdict(lambda: itertools.count(1))
        self._lock = threading.Lock()

    def next_nonce(self, caller: str) -> str:
        with self._lock:
            return f"auto-{next(self._counters[caller.lower()])}"

    def build(self, kind: IntentKind, caller: str, nonce: Optional[str] = None, **params: Any) -> Intent:
        if nonce is None or str(nonce).strip() == "":
            nonce = self.next_nonce(caller)
        return Intent(kind=kind, caller=caller, nonce=str(nonce).strip(), params=params or None)
