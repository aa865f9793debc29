"""
Per-Account Guard Module

Serializes balance-mutating work per account without a global lock. Guards
are re-entrant, so a loan operation holding the borrower's guard can call
into the ledger, which takes the same guard again. A guard is dropped from
the registry once no thread holds or waits on it, so the registry only ever
contains keys that are in use.
"""

import threading
from contextlib import contextmanager
from typing import Dict, List, Tuple

from .exceptions import ConcurrencyConflict


class _Guard:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0  # threads holding or waiting, counted per hold()


class GuardRegistry:
    """Keyed re-entrant locks with ordered multi-key acquisition"""

    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds
        self._guards: Dict[str, _Guard] = {}
        self._registry_lock = threading.Lock()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._guards)

    def _checkout(self, key: str) -> _Guard:
        with self._registry_lock:
            guard = self._guards.get(key)
            if guard is None:
                guard = _Guard()
                self._guards[key] = guard
            guard.users += 1
            return guard

    def _checkin(self, key: str, guard: _Guard) -> None:
        with self._registry_lock:
            guard.users -= 1
            if guard.users == 0:
                del self._guards[key]

    @contextmanager
    def hold(self, *keys: str):
        """
        Hold the guards for every key, acquired in ascending key order so two
        operations over the same keys can never deadlock.

        Raises:
            ConcurrencyConflict: If a guard is not acquired within the timeout
        """
        ordered = sorted(set(k for k in keys if k))
        checked_out: List[Tuple[str, _Guard]] = []
        acquired: List[_Guard] = []
        try:
            for key in ordered:
                guard = self._checkout(key)
                checked_out.append((key, guard))
                if not guard.lock.acquire(timeout=self.timeout_seconds):
                    raise ConcurrencyConflict(
                        f"Timed out after {self.timeout_seconds}s waiting for guard {key}",
                        key=key,
                    )
                acquired.append(guard)
            yield
        finally:
            for guard in reversed(acquired):
                guard.lock.release()
            for key, guard in reversed(checked_out):
                self._checkin(key, guard)


def account_key(account_id: str) -> str:
    return f"account:{account_id}"


def loan_key(loan_id: str) -> str:
    return f"loan:{loan_id}"
