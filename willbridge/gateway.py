"""
RequestGateway - maps HTTP-shaped requests onto intents and results.

The gateway knows nothing about the web framework. Each handler takes the
decoded JSON body plus an optional idempotency key and returns a
GatewayResponse; willbridge.app turns that into a Flask response.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .cache import StateCache
from .encoder import validate_address
from .exceptions import WillBridgeError, ValidationError, Reverted, TimedOut
from .intent import IntentFactory, IntentKind
from .lifecycle import TransactionLifecycleManager
from .models import ActionResult, IntentStatus
from .version import __version__


@dataclass
class GatewayResponse:
    """Status code and JSON payload for one request"""
    status_code: int
    payload: Dict[str, Any] = field(default_factory=dict)


class RequestGateway:
    """
    Front door of the service.

    Server-signed actions run to a terminal state before responding; a
    transaction still pending after the confirmation budget answers 202
    with its hash. Deposits are prepared here and signed by the caller.
    """

    def __init__(
        self,
        manager: TransactionLifecycleManager,
        cache: StateCache,
        intents: Optional[IntentFactory] = None,
        default_caller: Optional[str] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.manager = manager
        self.cache = cache
        self.intents = intents or IntentFactory()
        if default_caller is None and manager.signer is not None:
            default_caller = manager.signer.address
        self.default_caller = default_caller
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def health(self) -> GatewayResponse:
        return GatewayResponse(200, {
            "status": "ok",
            "service": "willbridge",
            "version": __version__,
            "chainId": self.manager.ledger.configured_chain_id,
        })

    def contract_info(self) -> GatewayResponse:
        return self._handle("get contract info", lambda: GatewayResponse(200, self.cache.get().to_response()))

    def set_recipient(self, body: Any, idempotency_key: Optional[str] = None) -> GatewayResponse:
        def run():
            data = self._body(body)
            recipient = self._required(data, "recipient", "Recipient address is required")
            return self._execute(IntentKind.SET_RECIPIENT, data, idempotency_key, recipient=recipient)
        return self._handle("set recipient", run)

    def change_recipient(self, body: Any, idempotency_key: Optional[str] = None) -> GatewayResponse:
        def run():
            data = self._body(body)
            recipient = self._required(data, "newRecipient", "New recipient address is required")
            return self._execute(IntentKind.CHANGE_RECIPIENT, data, idempotency_key, recipient=recipient)
        return self._handle("change recipient", run)

    def ping(self, body: Any = None, idempotency_key: Optional[str] = None) -> GatewayResponse:
        return self._handle(
            "ping contract",
            lambda: self._execute(IntentKind.PING, self._body(body), idempotency_key),
        )

    def claim(self, body: Any = None, idempotency_key: Optional[str] = None) -> GatewayResponse:
        return self._handle(
            "claim funds",
            lambda: self._execute(IntentKind.CLAIM, self._body(body), idempotency_key),
        )

    def trigger_reminder(self, body: Any = None, idempotency_key: Optional[str] = None) -> GatewayResponse:
        return self._handle(
            "trigger reminder",
            lambda: self._execute(IntentKind.TRIGGER_REMINDER, self._body(body), idempotency_key),
        )

    def prepare_deposit(self, body: Any, idempotency_key: Optional[str] = None) -> GatewayResponse:
        def run():
            data = self._body(body)
            amount = self._required(data, "amount", "Amount is required")
            sender = validate_address(self._required(data, "from", "Invalid from address"), "from")
            intent = self.intents.build(
                IntentKind.DEPOSIT,
                sender,
                nonce=self._request_id(data, idempotency_key),
                amount=amount,
            )
            result = self.manager.prepare(intent)
            payload = result.prepared.to_response()
            payload.update({"intentKey": result.intent_key, "status": result.status.value})
            if result.tx_hash:
                payload["txHash"] = result.tx_hash
            return GatewayResponse(200, payload)
        return self._handle("prepare deposit", run)

    def submit_signed_tx(self, body: Any, idempotency_key: Optional[str] = None) -> GatewayResponse:
        def run():
            data = self._body(body)
            signed_tx = self._required(data, "signedTx", "Signed transaction is required")
            if not isinstance(signed_tx, str):
                raise ValidationError("signedTx must be a 0x-prefixed hex string")
            result = self.manager.submit_signed(signed_tx, prepared_id=data.get("preparedId"))
            return self._result_response(result)
        return self._handle("submit transaction", run)

    def intent_status(self, intent_key: str) -> GatewayResponse:
        def run():
            result = self.manager.status(intent_key)
            payload = {
                "intentKey": result.intent_key,
                "kind": result.kind,
                "status": result.status.value,
                "txHash": result.tx_hash,
            }
            if result.error_kind:
                payload["errorKind"] = result.error_kind
                payload["details"] = result.detail
            if result.reason:
                payload["reason"] = result.reason
            return GatewayResponse(200, payload)
        return self._handle("get transaction status", run)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _body(body: Any) -> Dict[str, Any]:
        if body is None:
            return {}
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        return body

    @staticmethod
    def _required(data: Dict[str, Any], name: str, message: str) -> Any:
        value = data.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError(message)
        return value

    @staticmethod
    def _request_id(data: Dict[str, Any], idempotency_key: Optional[str]) -> Optional[str]:
        request_id = idempotency_key or data.get("requestId")
        return str(request_id) if request_id is not None else None

    def _caller(self, data: Dict[str, Any]) -> str:
        caller = data.get("caller") or self.default_caller
        if not caller:
            raise ValidationError("caller is required when the service has no signer")
        return validate_address(caller, "caller")

    def _execute(self, kind: IntentKind, data: Dict[str, Any], idempotency_key: Optional[str], **params) -> GatewayResponse:
        intent = self.intents.build(
            kind,
            self._caller(data),
            nonce=self._request_id(data, idempotency_key),
            **params,
        )
        return self._result_response(self.manager.execute(intent))

    @staticmethod
    def _result_response(result: ActionResult) -> GatewayResponse:
        if result.status == IntentStatus.CONFIRMED:
            return GatewayResponse(200, {
                "success": True,
                "txHash": result.tx_hash,
                "intentKey": result.intent_key,
            })
        result.raise_for_status()
        # Submitted but not yet polled, e.g. a cancelled wait
        return GatewayResponse(202, {
            "success": True,
            "txHash": result.tx_hash,
            "intentKey": result.intent_key,
            "pending": True,
        })

    def _handle(self, action: str, handler: Callable[[], GatewayResponse]) -> GatewayResponse:
        try:
            return handler()
        except WillBridgeError as e:
            return self._error_response(action, e)
        except Exception as e:
            self.logger.exception(f"Unexpected error while trying to {action}: {str(e)}")
            return GatewayResponse(500, {
                "error": f"Failed to {action}",
                "kind": "InternalError",
                "details": "Unexpected server error",
            })

    def _error_response(self, action: str, error: WillBridgeError) -> GatewayResponse:
        if isinstance(error, ValidationError):
            self.logger.info(f"Rejected request to {action}: {error.detail}")
            payload = {"error": error.detail, "kind": error.kind, "details": error.detail}
        else:
            log = self.logger.warning if error.http_status < 500 else self.logger.error
            log(f"Failed to {action}: {error.kind}: {error.detail}")
            payload = {"error": f"Failed to {action}", "kind": error.kind, "details": error.detail}

        if isinstance(error, Reverted) and error.reason:
            payload["reason"] = error.reason
        if isinstance(error, TimedOut):
            payload["pending"] = True
        if error.tx_hash:
            payload["txHash"] = error.tx_hash
        if error.intent_key:
            payload["intentKey"] = error.intent_key
        return GatewayResponse(error.http_status, payload)
