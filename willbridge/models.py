"""
Data models for the willbridge service.
"""
from enum import Enum
from typing import Dict, Any, Optional, List

from pydantic import BaseModel, Field, field_validator, model_validator
from web3 import Web3

from .exceptions import (
    Reverted, TimedOut, RejectedByNode, PreparedExpired
)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class ContractState(BaseModel):
    """Snapshot of the Will agreement's on-chain fields"""
    owner: str
    recipient: str
    start_time: int = Field(..., alias="startTime", ge=0)
    pinged_last: int = Field(..., alias="pingedLast", ge=0)

    class Config:
        populate_by_name = True
        frozen = True

    @field_validator("owner", "recipient")
    @classmethod
    def _checksum(cls, value: str) -> str:
        if not Web3.is_address(value):
            raise ValueError(f"not a 20-byte address: {value!r}")
        return Web3.to_checksum_address(value)

    @model_validator(mode="after")
    def _liveness_after_start(self) -> "ContractState":
        if self.pinged_last < self.start_time:
            raise ValueError(
                f"pingedLast ({self.pinged_last}) precedes startTime ({self.start_time})"
            )
        return self

    @property
    def has_recipient(self) -> bool:
        return self.recipient != ZERO_ADDRESS

    def to_response(self) -> Dict[str, str]:
        """Render the contract-info response, timestamps as decimal strings."""
        return {
            "owner": self.owner,
            "recipient": self.recipient,
            "startTime": str(self.start_time),
            "pingedLast": str(self.pinged_last),
        }


class PreparedTransaction(BaseModel):
    """Unsigned transaction descriptor handed to a client for signing"""
    to: str
    value: str
    data: str
    chain_id: int = Field(..., alias="chainId")
    prepared_id: Optional[str] = Field(None, alias="preparedId")
    expires_at: Optional[int] = Field(None, alias="expiresAt")

    class Config:
        populate_by_name = True

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class TxStatus(str, Enum):
    """Status of a broadcast transaction"""
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    FAILED = "Failed"


class SubmittedTransaction(BaseModel):
    """A transaction this service has broadcast or relayed"""
    tx_hash: str
    intent_key: str
    status: TxStatus = TxStatus.PENDING
    submitted_at: float
    confirmed_at: Optional[float] = None
    block_number: Optional[int] = None
    revert_reason: Optional[str] = None


class TxReceipt(BaseModel):
    """Transaction receipt from the blockchain"""
    tx_hash: str = Field(..., alias="transactionHash")
    block_number: int = Field(..., alias="blockNumber")
    block_hash: str = Field(..., alias="blockHash")
    status: int
    gas_used: int = Field(0, alias="gasUsed")
    from_address: Optional[str] = Field(None, alias="from")
    to_address: Optional[str] = Field(None, alias="to")
    logs: List[Dict[str, Any]] = Field(default_factory=list)

    class Config:
        populate_by_name = True

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class IntentStatus(str, Enum):
    """Lifecycle state of an intent"""
    VALIDATED = "Validated"
    AWAITING_SIGNATURE = "AwaitingSignature"
    SUBMITTED = "Submitted"
    CONFIRMED = "Confirmed"
    REVERTED = "Reverted"
    TIMED_OUT = "TimedOut"
    REJECTED = "Rejected"
    EXPIRED = "Expired"


class ActionResult(BaseModel):
    """Caller-facing snapshot of an intent's lifecycle"""
    intent_key: str
    kind: str
    status: IntentStatus
    tx_hash: Optional[str] = None
    error_kind: Optional[str] = None
    detail: Optional[str] = None
    reason: Optional[str] = None
    prepared: Optional[PreparedTransaction] = None

    def raise_for_status(self) -> "ActionResult":
        """
        Raise the matching error if the intent ended in a failure state

        Returns:
            self, for chaining, when the intent did not fail

        Raises:
            Reverted, TimedOut, RejectedByNode, PreparedExpired
        """
        detail = self.detail or f"{self.kind} ended in state {self.status.value}"
        if self.status == IntentStatus.REVERTED:
            raise Reverted(detail, reason=self.reason, intent_key=self.intent_key, tx_hash=self.tx_hash)
        if self.status == IntentStatus.TIMED_OUT:
            raise TimedOut(detail, intent_key=self.intent_key, tx_hash=self.tx_hash)
        if self.status == IntentStatus.REJECTED:
            raise RejectedByNode(detail, intent_key=self.intent_key, tx_hash=self.tx_hash)
        if self.status == IntentStatus.EXPIRED:
            raise PreparedExpired(detail, intent_key=self.intent_key)
        return self
