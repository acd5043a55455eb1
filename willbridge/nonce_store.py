"""
Persistent nonce high-watermarks for server signers.
"""
import json
import logging
import os
import stat
from pathlib import Path
from typing import Any, Dict, Optional

import appdirs
import portalocker

logger = logging.getLogger(__name__)


class NonceStore:
    """
    Thread-safe and process-safe store of the next nonce per signer.

    A nonce is recorded only after the node accepted a transaction using it,
    so the watermark survives restarts without ever pointing below a nonce
    already spent.
    """

    def __init__(self, store_path: Optional[str] = None):
        """
        Initialize the nonce store.

        Args:
            store_path: Optional custom path; defaults to WILL_NONCE_STORE_PATH
                or the platform user data directory
        """
        if store_path:
            self.store_path = Path(store_path)
        else:
            default_path = os.environ.get(
                "WILL_NONCE_STORE_PATH",
                str(Path(appdirs.user_data_dir("willbridge")) / "nonces.json")
            )
            self.store_path = Path(default_path)

        self._ensure_file()

    def _ensure_file(self):
        directory = self.store_path.parent
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)

        if not self.store_path.exists():
            with open(self.store_path, 'w') as f:
                json.dump({"signers": {}}, f)

        if os.name == 'posix':
            os.chmod(self.store_path, stat.S_IRUSR | stat.S_IWUSR)  # 0600

    def _get_lock_path(self) -> str:
        return str(self.store_path) + '.lock'

    def _read_unlocked(self) -> Dict[str, Any]:
        try:
            with open(self.store_path, 'r') as f:
                data = json.load(f)
        except (json.JSONDecodeError, FileNotFoundError):
            return {"signers": {}}
        data.setdefault("signers", {})
        return data

    def read(self) -> Dict[str, Any]:
        with portalocker.Lock(self._get_lock_path(), timeout=10):
            return self._read_unlocked()

    def get(self, address: str) -> int:
        """Next nonce recorded for a signer, 0 if none."""
        return int(self.read()["signers"].get(address.lower(), 0))

    def advance(self, address: str, next_nonce: int) -> int:
        """
        Raise a signer's watermark to next_nonce. Never lowers it.

        Returns:
            The stored watermark after the update
        """
        key = address.lower()
        with portalocker.Lock(self._get_lock_path(), timeout=10):
            data = self._read_unlocked()
            current = int(data["signers"].get(key, 0))
            if next_nonce > current:
                data["signers"][key] = next_nonce
                tmp_path = self.store_path.with_suffix(self.store_path.suffix + ".tmp")
                with open(tmp_path, 'w') as f:
                    json.dump(data, f, indent=2)
                os.replace(tmp_path, self.store_path)
                current = next_nonce
            else:
                logger.debug(f"Nonce watermark for {key} stays at {current} (offered {next_nonce})")
            return current

    def clear(self):
        """Clear all watermarks (for testing)"""
        with portalocker.Lock(self._get_lock_path(), timeout=10):
            with open(self.store_path, 'w') as f:
                json.dump({"signers": {}}, f)
