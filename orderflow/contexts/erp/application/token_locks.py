from __future__ import annotations

from threading import Lock
from typing import Dict


class TenantLockRegistry:
    """One lock per tenant so concurrent refreshes of the same token pair serialize."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: Dict[str, Lock] = {}

    def lock_for(self, tenant_id: str) -> Lock:
        key = str(tenant_id or "").strip()
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = Lock()
                self._locks[key] = lock
            return lock

    def reset_for_tests(self) -> None:
        with self._guard:
            self._locks.clear()


_token_locks = TenantLockRegistry()


def get_token_lock_registry() -> TenantLockRegistry:
    return _token_locks


def reset_token_locks_for_tests() -> None:
    _token_locks.reset_for_tests()
