"""
Decoding of signed raw transactions.

Clients return signed transactions as hex strings. Before relaying one we
need its sender, target, value, calldata and chain id so it can be bound
to the intent it was prepared for and checked against cross-network
replay.
"""
from dataclasses import dataclass
from typing import Optional, Union

import rlp
from eth_account import Account
from eth_utils import big_endian_to_int
from web3 import Web3

from ..exceptions import ValidationError

# Position of the `to` field in the RLP payload of each typed envelope.
# chainId is always first and nonce second; value and data follow `to`.
_TYPED_TO_INDEX = {
    0x01: 4,  # EIP-2930
    0x02: 5,  # EIP-1559
    0x03: 5,  # EIP-4844
    0x04: 5,  # EIP-7702
}


@dataclass(frozen=True)
class DecodedTransaction:
    """Fields of a signed transaction relevant to intent binding"""
    tx_hash: str
    sender: str
    nonce: int
    to: Optional[str]
    value: int
    data: str
    chain_id: Optional[int]
    raw: bytes


def to_raw_bytes(raw: Union[str, bytes, bytearray]) -> bytes:
    """
    Normalize a signed transaction to bytes

    Raises:
        ValidationError: If the input is not bytes or a hex string
    """
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    if isinstance(raw, str):
        text = raw.strip()
        if text[:2].lower() == "0x":
            text = text[2:]
        try:
            return bytes.fromhex(text)
        except ValueError as e:
            raise ValidationError(f"Signed transaction is not valid hex: {str(e)}")
    raise ValidationError(f"Signed transaction must be a hex string, got {type(raw).__name__}")


def _address_or_none(value: bytes) -> Optional[str]:
    if not value:
        return None
    if len(value) != 20:
        raise ValueError(f"'to' field has {len(value)} bytes, expected 20")
    return Web3.to_checksum_address(value)


def decode_signed_transaction(raw: Union[str, bytes, bytearray]) -> DecodedTransaction:
    """
    Decode a legacy (EIP-155) or typed (EIP-2718) signed transaction

    Args:
        raw: Signed transaction as bytes or 0x-prefixed hex

    Returns:
        DecodedTransaction with the recovered sender

    Raises:
        ValidationError: If the bytes are not a well-formed signed transaction
    """
    raw_bytes = to_raw_bytes(raw)
    if not raw_bytes:
        raise ValidationError("Signed transaction is empty")

    try:
        if raw_bytes[0] <= 0x7f:
            tx_type = raw_bytes[0]
            if tx_type not in _TYPED_TO_INDEX:
                raise ValueError(f"unsupported transaction type {tx_type:#04x}")
            fields = rlp.decode(raw_bytes[1:])
            to_index = _TYPED_TO_INDEX[tx_type]
            chain_id = big_endian_to_int(fields[0])
            nonce = big_endian_to_int(fields[1])
            to = _address_or_none(fields[to_index])
            value = big_endian_to_int(fields[to_index + 1])
            data = fields[to_index + 2]
        else:
            fields = rlp.decode(raw_bytes)
            if len(fields) != 9:
                raise ValueError(f"legacy transaction has {len(fields)} fields, expected 9")
            nonce = big_endian_to_int(fields[0])
            to = _address_or_none(fields[3])
            value = big_endian_to_int(fields[4])
            data = fields[5]
            v = big_endian_to_int(fields[6])
            # Pre-EIP-155 signatures carry no chain id
            chain_id = (v - 35) // 2 if v >= 35 else None

        sender = Account.recover_transaction(raw_bytes)
    except ValidationError:
        raise
    except Exception as e:
        raise ValidationError(f"Malformed signed transaction: {str(e)}")

    return DecodedTransaction(
        tx_hash=Web3.to_hex(Web3.keccak(raw_bytes)),
        sender=Web3.to_checksum_address(sender),
        nonce=nonce,
        to=to,
        value=value,
        data=Web3.to_hex(data),
        chain_id=chain_id,
        raw=raw_bytes,
    )
