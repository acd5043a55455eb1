"""
ActionEncoder - turns intents into contract call payloads.

Validation happens before encoding and raises the specific violation.
Encoding is pure: the same intent against the same ABI always yields the
same calldata.
"""
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional, Sequence, Tuple

from eth_abi import encode
from eth_abi.exceptions import EncodingError as ABIEncodingError
from web3 import Web3

from .exceptions import EncodingError, InvalidAddress, InvalidAmount
from .intent import Intent, IntentKind
from .ledger.abi import WILL_ABI, find_function, function_signature

WEI_PER_ETHER = 10**18
ETHER_DECIMALS = 18

_AMOUNT_RE = re.compile(r"^(\d+(\.\d*)?|\.\d+)$")

_FUNCTION_NAMES = {
    IntentKind.SET_RECIPIENT: "setRecipient",
    IntentKind.CHANGE_RECIPIENT: "changeRecipient",
    IntentKind.PING: "ping",
    IntentKind.DEPOSIT: "deposit",
    IntentKind.CLAIM: "claim",
    IntentKind.TRIGGER_REMINDER: "triggerReminder",
}


@dataclass(frozen=True)
class ContractCall:
    """Exact call payload for one intent"""
    kind: IntentKind
    to: str
    value: int
    data: str


def validate_address(value: Any, field: str = "recipient") -> str:
    """
    Validate an address and return its checksummed form

    Args:
        value: Candidate address
        field: Field name used in the error message

    Raises:
        InvalidAddress: If the value is not a 20-byte address or is the zero address
    """
    if not isinstance(value, str) or not Web3.is_address(value.strip()):
        raise InvalidAddress(f"Invalid {field} address: {value!r}")
    address = Web3.to_checksum_address(value.strip())
    if int(address, 16) == 0:
        raise InvalidAddress(f"Invalid {field} address: the zero address is not allowed")
    return address


def parse_ether(amount: Any) -> int:
    """
    Convert a decimal ETH amount to wei without rounding

    Args:
        amount: Decimal string (preferred), int, Decimal or float

    Returns:
        Amount in wei

    Raises:
        InvalidAmount: On zero, negative, non-numeric input or more than
            18 significant fractional digits
    """
    if isinstance(amount, bool) or amount is None:
        raise InvalidAmount(f"Amount must be a positive decimal ETH value, got {amount!r}")
    if isinstance(amount, Decimal):
        text = format(amount, "f")
    elif isinstance(amount, (int, float, str)):
        text = str(amount).strip()
    else:
        raise InvalidAmount(f"Amount must be a decimal string, got {type(amount).__name__}")

    if not _AMOUNT_RE.match(text):
        raise InvalidAmount(f"Amount must be a positive decimal ETH value, got {amount!r}")

    whole, _, fraction = text.partition(".")
    fraction = fraction.rstrip("0")
    if len(fraction) > ETHER_DECIMALS:
        raise InvalidAmount(
            f"Amount {text} has more than {ETHER_DECIMALS} decimal places and cannot be converted to wei exactly"
        )

    wei = int(whole or "0") * WEI_PER_ETHER + int(fraction.ljust(ETHER_DECIMALS, "0") or "0")
    if wei <= 0:
        raise InvalidAmount("Amount must be greater than zero")
    return wei


class ActionEncoder:
    """Validates intents and encodes them against the Will ABI"""

    def __init__(self, contract_address: str, abi: Optional[Sequence[dict]] = None):
        if not Web3.is_address(contract_address):
            raise ValueError(f"Invalid contract address: {contract_address}")
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.abi = list(abi) if abi is not None else WILL_ABI

    def _arguments(self, intent: Intent) -> Tuple[List[Any], int]:
        if intent.kind in (IntentKind.SET_RECIPIENT, IntentKind.CHANGE_RECIPIENT):
            field = "newRecipient" if intent.kind == IntentKind.CHANGE_RECIPIENT else "recipient"
            return [validate_address(intent.param("recipient"), field)], 0
        if intent.kind == IntentKind.DEPOSIT:
            return [], parse_ether(intent.param("amount"))
        return [], 0

    def encode_function(self, name: str, args: Sequence[Any]) -> str:
        """
        ABI-encode a function call

        Raises:
            EncodingError: If the ABI lacks the function or the args do not fit it
        """
        entry = find_function(name, self.abi)
        if entry is None:
            raise EncodingError(f"Function '{name}' is not in the contract ABI")
        types = [arg["type"] for arg in entry.get("inputs", [])]
        if len(types) != len(args):
            raise EncodingError(f"Function '{name}' takes {len(types)} argument(s), got {len(args)}")

        selector = Web3.keccak(text=function_signature(entry))[:4]
        try:
            encoded = encode(types, list(args))
        except (ABIEncodingError, TypeError, ValueError) as e:
            raise EncodingError(f"Failed to encode arguments for '{name}': {str(e)}")
        return Web3.to_hex(bytes(selector) + encoded)

    def encode(self, intent: Intent) -> ContractCall:
        """
        Validate an intent and build its call payload

        Raises:
            InvalidAddress: For a bad recipient
            InvalidAmount: For a bad deposit amount
            EncodingError: On an ABI mismatch
        """
        name = _FUNCTION_NAMES.get(intent.kind)
        if name is None:
            raise EncodingError(f"No contract function for intent kind {intent.kind}")
        args, value = self._arguments(intent)
        entry = find_function(name, self.abi)
        if value and entry is not None and entry.get("stateMutability") != "payable":
            raise EncodingError(f"Function '{name}' is not payable")
        return ContractCall(
            kind=intent.kind,
            to=self.contract_address,
            value=value,
            data=self.encode_function(name, args),
        )

    def kind_of(self, data: str) -> Optional[IntentKind]:
        """Intent kind whose function selector starts ``data``, if any."""
        selector = (data or "").lower()[:10]
        for kind, name in _FUNCTION_NAMES.items():
            entry = find_function(name, self.abi)
            if entry is not None and Web3.to_hex(Web3.keccak(text=function_signature(entry))[:4]) == selector:
                return kind
        return None
