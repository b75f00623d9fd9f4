# core/key_pool.py
"""Rotation pool of upstream API keys"""

import logging
import threading
import time
from typing import Dict, List, NamedTuple, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3


class NoKeysError(Exception):
    """Raised when a key is requested from an empty pool"""


class KeyStatus(NamedTuple):
    """Rotation state of one key slot"""
    available: bool = True
    consecutive_failures: int = 0
    last_used_at: Optional[float] = None


def mask_key(key: str) -> str:
    """Short prefix of a key, safe for logs"""
    return f"{key[:10]}..."


class KeyPool:
    """
    Round-robin pool of API keys with failure quarantine.

    Keys live in an ordered tuple; per-slot state is a mapping from slot
    index to an immutable KeyStatus. Every operation takes the same lock, and
    replace() swaps keys, states and cursor together.
    """

    def __init__(self, keys: Sequence[str] = (), failure_threshold: int = DEFAULT_FAILURE_THRESHOLD):
        """
        Args:
            keys: Initial keys, in rotation order
            failure_threshold: Consecutive failures after which a key is quarantined
        """
        self.failure_threshold = failure_threshold
        self._lock = threading.Lock()
        self._keys: tuple = ()
        self._states: Dict[int, KeyStatus] = {}
        self._cursor = 0
        if keys:
            self.replace(keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def values(self) -> List[str]:
        """Current keys in rotation order"""
        with self._lock:
            return list(self._keys)

    def select(self) -> str:
        """
        Returns the next available key and advances the cursor past it.

        When every key is quarantined the pool resets all of them to
        available and hands out the key under the cursor.

        Raises:
            NoKeysError: the pool is empty
        """
        with self._lock:
            total = len(self._keys)
            if total == 0:
                raise NoKeysError("No API keys available")

            for _ in range(total):
                index = self._cursor
                self._cursor = (self._cursor + 1) % total
                if self._states[index].available:
                    return self._mark_used(index)

            logger.warning(f"⚠️ All {total} keys unavailable, resetting pool")
            self._states = {index: KeyStatus() for index in range(total)}

            index = self._cursor
            self._cursor = (self._cursor + 1) % total
            return self._mark_used(index)

    def _mark_used(self, index: int) -> str:
        self._states[index] = self._states[index]._replace(last_used_at=time.time())
        return self._keys[index]

    def _find(self, key: str) -> Optional[int]:
        for index, value in enumerate(self._keys):
            if value == key:
                return index
        return None

    def report_success(self, key: str):
        """Clears the failure counter of the first slot holding ``key``"""
        with self._lock:
            index = self._find(key)
            if index is None:
                return
            self._states[index] = self._states[index]._replace(consecutive_failures=0)

    def report_failure(self, key: str):
        """
        Counts a credential-attributable failure for ``key``.

        The slot is quarantined once the counter reaches the threshold; it is
        never removed from the rotation.
        """
        with self._lock:
            index = self._find(key)
            if index is None:
                return

            status = self._states[index]
            failures = status.consecutive_failures + 1
            available = status.available and failures < self.failure_threshold
            self._states[index] = status._replace(consecutive_failures=failures, available=available)

            logger.warning(f"🔑 Key failure ({failures}/{self.failure_threshold}): {mask_key(key)}")
            if status.available and not available:
                logger.error(f"❌ Key quarantined: {mask_key(key)}")

    def replace(self, keys: Sequence[str]):
        """Discards the current pool and rebuilds it from ``keys``"""
        new_keys = tuple(keys)
        new_states = {index: KeyStatus() for index in range(len(new_keys))}

        with self._lock:
            self._keys = new_keys
            self._states = new_states
            self._cursor = 0

        logger.info(f"🔄 Key pool replaced: {len(new_keys)} keys")

    def stats(self) -> Dict[str, int]:
        """Returns {total, available, unavailable}"""
        with self._lock:
            total = len(self._keys)
            available = sum(1 for status in self._states.values() if status.available)

        return {
            'total': total,
            'available': available,
            'unavailable': total - available
        }

    def snapshot(self) -> List[Dict]:
        """Per-slot view with masked keys, for the status endpoint"""
        with self._lock:
            return [
                {
                    'key': mask_key(key),
                    'available': self._states[index].available,
                    'consecutive_failures': self._states[index].consecutive_failures,
                    'last_used_at': self._states[index].last_used_at,
                }
                for index, key in enumerate(self._keys)
            ]
