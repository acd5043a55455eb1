"""
Configuration for the willbridge service.

Settings come from ``WILL_*`` environment variables, after a ``.env`` file
has been loaded into the environment. ``WILL_NETWORK`` picks
an entry from the packaged networks.json, which supplies the default RPC
URL and chain id.
"""
import json
import logging
import os
import urllib.parse
from importlib import resources
from typing import Any, Dict, Literal, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator
from web3 import Web3

from .ledger.stub import DEFAULT_CONTRACT_ADDRESS

logger = logging.getLogger(__name__)

DEFAULT_NETWORK = "anvil-local"


class NetworkConfig:
    """Known networks, loaded once from the packaged networks.json"""

    _networks_cache: Optional[Dict[str, Dict[str, Any]]] = None

    @classmethod
    def load_networks(cls) -> Dict[str, Dict[str, Any]]:
        if cls._networks_cache is None:
            text = resources.files("willbridge").joinpath("networks.json").read_text(encoding="utf-8")
            cls._networks_cache = json.loads(text)
        return cls._networks_cache

    @classmethod
    def get_network(cls, name: str) -> Dict[str, Any]:
        """
        Get a network configuration by name

        Raises:
            ValueError: If the network is unknown; the message lists known ones
        """
        networks = cls.load_networks()
        if name not in networks:
            available = ", ".join(sorted(networks))
            raise ValueError(f"Unknown network '{name}'. Available networks: {available}")
        return networks[name]

    @classmethod
    def get_rpc_url(cls, name: str) -> str:
        return cls.get_network(name)["rpc"]

    @classmethod
    def get_chain_id(cls, name: str) -> int:
        return int(cls.get_network(name)["chainId"])


# Environment variable -> BridgeConfig field, for optional overrides
_ENV_FIELDS = {
    "WILL_RPC_URL": "rpc_url",
    "WILL_CHAIN_ID": "chain_id",
    "WILL_CONTRACT_ADDRESS": "contract_address",
    "WILL_PRIVATE_KEY": "private_key",
    "WILL_LEDGER_BACKEND": "ledger_backend",
    "WILL_STATE_FRESHNESS": "state_freshness",
    "WILL_PREPARED_TTL": "prepared_ttl",
    "WILL_GRACE_PERIOD": "grace_period",
    "WILL_CONFIRMATION_TIMEOUT": "confirmation_timeout",
    "WILL_POLL_INTERVAL": "poll_interval",
    "WILL_MAX_SYNC_LAG": "max_sync_lag",
    "WILL_NONCE_STORE_PATH": "nonce_store_path",
    "WILL_RETRY_COUNT": "retry_count",
    "WILL_HTTP_TIMEOUT": "http_timeout",
    "WILL_HOST": "host",
    "WILL_PORT": "port",
}

# Unprefixed names used by existing .env files; the WILL_ name wins when both are set
_ENV_ALIASES = {
    "RPC_URL": "rpc_url",
    "CONTRACT_ADDRESS": "contract_address",
    "PRIVATE_KEY": "private_key",
    "PORT": "port",
}


class BridgeConfig(BaseModel):
    """Settings for one service instance bound to one Will contract"""
    network: str = DEFAULT_NETWORK
    rpc_url: str = "http://localhost:8545"
    chain_id: int = 31337
    contract_address: str = DEFAULT_CONTRACT_ADDRESS
    private_key: Optional[SecretStr] = None
    ledger_backend: Literal["web3", "stub"] = "web3"

    state_freshness: float = Field(3.0, ge=0)
    prepared_ttl: float = Field(600.0, gt=0)
    grace_period: float = Field(3600.0, gt=0)
    confirmation_timeout: float = Field(120.0, ge=0)
    poll_interval: float = Field(0.5, gt=0)
    max_sync_lag: int = Field(5, ge=0)
    nonce_store_path: Optional[str] = None

    retry_count: int = Field(3, ge=0)
    http_timeout: int = Field(30, gt=0)
    host: str = "127.0.0.1"
    port: int = 3000

    @field_validator("rpc_url")
    @classmethod
    def _secure_rpc_url(cls, value: str) -> str:
        parsed = urllib.parse.urlparse(value)
        host = parsed.netloc.split(':')[0] if parsed.netloc else ''
        is_local = host in ('localhost', '127.0.0.1')
        if parsed.scheme != 'https' and not is_local:
            raise ValueError(f"rpc_url must use https:// for security (got: {parsed.scheme}://)")
        return value

    @field_validator("contract_address")
    @classmethod
    def _valid_contract(cls, value: str) -> str:
        if not Web3.is_address(value):
            raise ValueError(f"contract_address is not a valid address: {value!r}")
        return Web3.to_checksum_address(value)

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, dotenv_path: Optional[str] = ".env"
    ) -> "BridgeConfig":
        """
        Build a configuration from environment variables

        Args:
            environ: Mapping to read instead of os.environ
            dotenv_path: File loaded into os.environ first when reading the
                real environment; variables already set are kept

        Returns:
            BridgeConfig

        Raises:
            ValueError: If WILL_NETWORK is unknown
            pydantic.ValidationError: If a value is malformed
        """
        env = environ
        if env is None:
            if dotenv_path and load_dotenv(dotenv_path):
                logger.debug(f"Loaded environment from {dotenv_path}")
            env = os.environ
        network = env.get("WILL_NETWORK", DEFAULT_NETWORK)
        values: Dict[str, Any] = {
            "network": network,
            "rpc_url": NetworkConfig.get_rpc_url(network),
            "chain_id": NetworkConfig.get_chain_id(network),
        }
        for var, field in _ENV_ALIASES.items():
            raw = env.get(var, "").strip()
            if raw:
                values[field] = raw
        for var, field in _ENV_FIELDS.items():
            raw = env.get(var, "").strip()
            if raw:
                values[field] = raw

        config = cls(**values)
        logger.debug(
            f"Loaded config for network {config.network} (chain {config.chain_id}, "
            f"backend {config.ledger_backend}, contract {config.contract_address})"
        )
        return config
