"""
StateCache - short-lived cache of the Will's on-chain state.
"""
import logging
import threading
import time
from typing import Callable, Optional

from cachetools import TTLCache

from .ledger.base import LedgerClient
from .models import ContractState

_STATE_KEY = "state"


class StateCache:
    """
    Pull-based cache in front of LedgerClient.read_state.

    A read is served from the cache while it is younger than ``freshness``
    seconds. Misses re-read under a lock, so concurrent callers share one
    ledger round-trip. There is no background refresh.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        freshness: float = 3.0,
        timer: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None
    ):
        self.ledger = ledger
        self.freshness = freshness
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._cache = TTLCache(maxsize=1, ttl=freshness, timer=timer) if freshness > 0 else None

    def get(self) -> ContractState:
        """
        Current contract state, from cache when fresh

        Raises:
            LedgerUnreachable, LedgerStale, EncodingError: From the ledger read
        """
        with self._lock:
            if self._cache is not None:
                state = self._cache.get(_STATE_KEY)
                if state is not None:
                    return state
            state = self.ledger.read_state()
            if self._cache is not None:
                self._cache[_STATE_KEY] = state
            self.logger.debug(f"Refreshed contract state: pingedLast={state.pinged_last}")
            return state

    def invalidate(self) -> None:
        """Drop the cached state so the next get() reads the ledger."""
        with self._lock:
            if self._cache is not None:
                self._cache.clear()
        self.logger.debug("Contract state cache invalidated")

