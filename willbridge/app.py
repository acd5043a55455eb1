"""
Flask application exposing the RequestGateway over HTTP.
"""
import logging
import os
import traceback
from typing import Optional

from eth_account import Account
from flask import Flask, jsonify, request
from flask_cors import CORS

from .cache import StateCache
from .config import BridgeConfig
from .encoder import ActionEncoder
from .gateway import GatewayResponse, RequestGateway
from .ledger import get_ledger_client
from .lifecycle import TransactionLifecycleManager
from .nonce_store import NonceStore
from .signer import LocalSigner

logger = logging.getLogger(__name__)


def build_gateway(config: BridgeConfig) -> RequestGateway:
    """
    Wire ledger, cache, signer and lifecycle manager from a configuration

    The node's chain id is checked before the gateway is returned.

    Raises:
        ChainIdMismatch: If the node serves a different chain
        LedgerUnreachable: If the node cannot be reached
    """
    signer = None
    if config.private_key is not None:
        signer = LocalSigner(config.private_key.get_secret_value())
    elif config.ledger_backend == "stub":
        signer = LocalSigner(Account.create().key)
        logger.warning(f"WILL_PRIVATE_KEY not set; stub backend uses throwaway signer {signer.address}")
    else:
        logger.warning("WILL_PRIVATE_KEY not set; server-signed actions are disabled")

    ledger = get_ledger_client(config, owner=signer.address if signer else None)
    cache = StateCache(ledger, freshness=config.state_freshness)

    # The stub forgets its nonces on restart, so only persist against a real node
    nonce_store = None
    if signer is not None and config.ledger_backend == "web3":
        nonce_store = NonceStore(config.nonce_store_path)

    manager = TransactionLifecycleManager(
        ledger=ledger,
        encoder=ActionEncoder(ledger.contract_address),
        cache=cache,
        signer=signer,
        nonce_store=nonce_store,
        prepared_ttl=config.prepared_ttl,
        grace_period=config.grace_period,
        confirmation_timeout=config.confirmation_timeout,
        poll_interval=config.poll_interval,
    )
    manager.verify_chain_id()
    return RequestGateway(manager, cache)


def create_app(gateway: Optional[RequestGateway] = None, config: Optional[BridgeConfig] = None) -> Flask:
    """
    Create the Flask application

    Args:
        gateway: Prebuilt gateway; built from ``config`` when omitted
        config: Configuration; read from the environment when omitted
    """
    if gateway is None:
        gateway = build_gateway(config or BridgeConfig.from_env())

    app = Flask(__name__)
    app.config["GATEWAY"] = gateway
    # The browser client is served from another origin
    CORS(app)

    def respond(response: GatewayResponse):
        return jsonify(response.payload), response.status_code

    def idempotency_key() -> Optional[str]:
        return request.headers.get("Idempotency-Key")

    def body():
        return request.get_json(silent=True)

    @app.errorhandler(500)
    def handle_500(err):
        """Every 500 returns JSON; the traceback stays in the server log."""
        original = getattr(err, "original_exception", None) or err
        tb = "".join(traceback.format_exception(type(original), original, original.__traceback__))
        logger.error("500 Internal Server Error: %s\n%s", original, tb)
        return jsonify({
            "error": "Internal server error",
            "kind": "InternalError",
            "details": "Unexpected server error",
        }), 500

    @app.route("/health", methods=["GET"])
    def health():
        return respond(gateway.health())

    @app.route("/contract/info", methods=["GET"])
    def contract_info():
        return respond(gateway.contract_info())

    @app.route("/contract/set-recipient", methods=["POST"])
    def set_recipient():
        return respond(gateway.set_recipient(body(), idempotency_key()))

    @app.route("/contract/change-recipient", methods=["POST"])
    def change_recipient():
        return respond(gateway.change_recipient(body(), idempotency_key()))

    @app.route("/contract/ping", methods=["POST"])
    def ping():
        return respond(gateway.ping(body(), idempotency_key()))

    @app.route("/contract/prepare-deposit", methods=["POST"])
    def prepare_deposit():
        return respond(gateway.prepare_deposit(body(), idempotency_key()))

    @app.route("/contract/submit-signed-tx", methods=["POST"])
    def submit_signed_tx():
        return respond(gateway.submit_signed_tx(body(), idempotency_key()))

    @app.route("/contract/claim", methods=["POST"])
    def claim():
        return respond(gateway.claim(body(), idempotency_key()))

    @app.route("/contract/trigger-reminder", methods=["POST"])
    def trigger_reminder():
        return respond(gateway.trigger_reminder(body(), idempotency_key()))

    @app.route("/contract/tx/<path:intent_key>", methods=["GET"])
    def intent_status(intent_key):
        return respond(gateway.intent_status(intent_key))

    return app


def main():
    logging.basicConfig(
        level=os.environ.get("WILL_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    config = BridgeConfig.from_env()
    app = create_app(config=config)
    logger.info(f"willbridge serving contract {config.contract_address} on {config.host}:{config.port}")
    app.run(host=config.host, port=config.port, threaded=True)


if __name__ == "__main__":
    main()
