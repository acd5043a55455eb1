"""
Web3LedgerClient - ledger backend for a real JSON-RPC node.
"""
import logging
import urllib.parse
from typing import Dict, Any, Optional

import requests
from pydantic import ValidationError as ModelValidationError
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from web3 import Web3
from web3.exceptions import (
    BadFunctionCallOutput,
    ContractLogicError,
    TransactionNotFound,
    Web3Exception,
    Web3RPCError,
)

from .abi import WILL_ABI
from .base import LedgerClient
from ..exceptions import (
    EncodingError, LedgerStale, LedgerUnreachable, RejectedByNode, Reverted
)
from ..models import ContractState, PreparedTransaction, TxReceipt

# Buffer added on top of the node's gas estimate
GAS_BUFFER = 1.1

# Fragments of node error messages that mean the node refused the transaction
_REJECTION_MARKERS = (
    "nonce too low",
    "nonce too high",
    "already known",
    "replacement transaction underpriced",
    "insufficient funds",
    "invalid sender",
    "invalid signature",
    "intrinsic gas too low",
    "exceeds block gas limit",
    "chain id",
)


def _check_rpc_url(rpc_url: str) -> None:
    parsed = urllib.parse.urlparse(rpc_url)
    host = parsed.netloc.split(':')[0] if parsed.netloc else ''
    is_local = host in ('localhost', '127.0.0.1')
    if parsed.scheme != 'https' and not is_local:
        raise ValueError(f"rpc_url must use https:// for security (got: {parsed.scheme}://)")


def _rpc_message(error: Exception) -> str:
    """Extract the node's message from a JSON-RPC error."""
    message = getattr(error, "message", None)
    if message:
        return str(message)
    payload = error.args[0] if error.args else None
    if isinstance(payload, dict):
        return str(payload.get("message", payload))
    return str(error)


class Web3LedgerClient(LedgerClient):
    """
    Ledger backend over web3.py.

    HTTP requests go through a requests session with retries on connection
    errors and 5xx responses. Write operations are never retried by this
    class beyond what the transport does for a refused connection.
    """

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        chain_id: int,
        max_sync_lag: int = 5,
        retry_count: int = 3,
        timeout: int = 30,
        w3: Optional[Web3] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the client

        Args:
            rpc_url: JSON-RPC endpoint, https unless it is localhost
            contract_address: Address of the deployed Will contract
            chain_id: Chain id the service is configured for
            max_sync_lag: Blocks the node may trail the head before reads fail
            retry_count: Number of retries for HTTP requests
            timeout: Timeout for HTTP requests in seconds
            w3: Preconfigured Web3 instance (mainly for tests)
            logger: Optional logger instance

        Raises:
            ValueError: If the URL is insecure or the address malformed
        """
        super().__init__(contract_address, chain_id, logger=logger)
        _check_rpc_url(rpc_url)
        self.rpc_url = rpc_url
        self.max_sync_lag = max_sync_lag

        if w3 is None:
            self.session = requests.Session()
            retries = Retry(
                total=retry_count,
                backoff_factor=0.5,
                status_forcelist=[500, 502, 503, 504],
                allowed_methods=["POST"],
                raise_on_status=False,
                connect=retry_count,
                read=retry_count,
                other=retry_count
            )
            self.session.mount("http://", HTTPAdapter(max_retries=retries))
            self.session.mount("https://", HTTPAdapter(max_retries=retries))
            w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}, session=self.session))
        else:
            self.session = None
        self.w3 = w3
        self.contract = self.w3.eth.contract(address=self.contract_address, abi=WILL_ABI)

    def chain_id(self) -> int:
        try:
            return int(self.w3.eth.chain_id)
        except (requests.RequestException, Web3Exception, OSError) as e:
            raise LedgerUnreachable(f"Failed to read chain id: {str(e)}")

    def _check_sync(self) -> None:
        syncing = self.w3.eth.syncing
        if not syncing:
            return
        current = int(syncing["currentBlock"])
        highest = int(syncing["highestBlock"])
        if highest - current > self.max_sync_lag:
            raise LedgerStale(
                f"Node is {highest - current} blocks behind head "
                f"(tolerance {self.max_sync_lag})"
            )

    def read_state(self) -> ContractState:
        try:
            self._check_sync()
            fns = self.contract.functions
            owner = fns.owner().call()
            recipient = fns.recipient().call()
            start_time = fns.startTime().call()
            pinged_last = fns.pingedLast().call()
        except LedgerStale:
            raise
        except BadFunctionCallOutput as e:
            raise EncodingError(f"Contract at {self.contract_address} does not match the Will ABI: {str(e)}")
        except (requests.RequestException, Web3Exception, OSError) as e:
            raise LedgerUnreachable(f"Failed to read contract state: {str(e)}")

        try:
            return ContractState(
                owner=owner,
                recipient=recipient,
                start_time=start_time,
                pinged_last=pinged_last,
            )
        except ModelValidationError as e:
            raise EncodingError(f"Contract returned inconsistent state: {str(e)}")

    def pending_nonce(self, address: str) -> int:
        try:
            return int(self.w3.eth.get_transaction_count(Web3.to_checksum_address(address), "pending"))
        except (requests.RequestException, Web3Exception, OSError) as e:
            raise LedgerUnreachable(f"Failed to read nonce for {address}: {str(e)}")

    def estimate(self, call: PreparedTransaction, sender: str) -> Dict[str, int]:
        tx = {
            "from": Web3.to_checksum_address(sender),
            "to": call.to,
            "value": int(call.value),
            "data": call.data,
        }
        try:
            gas = self.w3.eth.estimate_gas(tx)
            gas_price = self.w3.eth.gas_price
        except ContractLogicError as e:
            reason = getattr(e, "message", None) or str(e)
            raise Reverted(f"Call would revert: {reason}", reason=reason)
        except (requests.RequestException, Web3Exception, OSError) as e:
            raise LedgerUnreachable(f"Gas estimation failed: {str(e)}")

        gas = int(gas * GAS_BUFFER)
        self.logger.debug(f"Estimated gas: {gas} at price {gas_price}")
        return {"gas": gas, "gasPrice": int(gas_price)}

    def broadcast(self, signed_tx: bytes) -> str:
        try:
            tx_hash = self.w3.eth.send_raw_transaction(signed_tx)
        except Web3RPCError as e:
            message = _rpc_message(e)
            self.logger.warning(f"Node rejected transaction: {message}")
            raise RejectedByNode(f"Node rejected transaction: {message}")
        except ValueError as e:
            message = _rpc_message(e)
            if any(marker in message.lower() for marker in _REJECTION_MARKERS):
                self.logger.warning(f"Node rejected transaction: {message}")
                raise RejectedByNode(f"Node rejected transaction: {message}")
            raise EncodingError(f"Malformed transaction bytes: {message}")
        except (requests.RequestException, Web3Exception, OSError) as e:
            raise LedgerUnreachable(f"Failed to send transaction: {str(e)}")

        tx_hash = Web3.to_hex(tx_hash)
        self.logger.info(f"Transaction sent: {tx_hash}")
        return tx_hash

    def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except (requests.RequestException, Web3Exception, OSError) as e:
            raise LedgerUnreachable(f"Failed to fetch receipt for {tx_hash}: {str(e)}")
        if receipt is None:
            return None
        return self._convert_receipt(receipt)

    def revert_reason(self, tx_hash: str) -> Optional[str]:
        """
        Replay a failed transaction with eth_call to recover its revert reason

        Returns:
            The reason string, or None if the node gives none
        """
        try:
            tx = self.w3.eth.get_transaction(tx_hash)
            replay = {
                "from": tx["from"],
                "to": tx["to"],
                "value": tx["value"],
                "data": tx["input"],
            }
            block = tx.get("blockNumber")
            self.w3.eth.call(replay, block - 1 if block else "latest")
        except ContractLogicError as e:
            return getattr(e, "message", None) or str(e)
        except (requests.RequestException, Web3Exception, OSError, KeyError) as e:
            self.logger.debug(f"Could not replay {tx_hash} for a revert reason: {e}")
        return None

    def _convert_receipt(self, web3_receipt: Any) -> TxReceipt:
        """
        Convert a web3 receipt to our TxReceipt model

        Args:
            web3_receipt: The web3 AttributeDict receipt

        Returns:
            Our TxReceipt model
        """
        receipt_dict = dict(web3_receipt)

        for key, value in list(receipt_dict.items()):
            if isinstance(value, bytes):
                receipt_dict[key] = Web3.to_hex(value)
        receipt_dict["logs"] = [dict(log) for log in receipt_dict.get("logs", [])]

        return TxReceipt.model_validate(receipt_dict)

    def close(self) -> None:
        if self.session is not None:
            self.session.close()
