"""
Verrous applicatifs par article / commande.

Le SELECT ... FOR UPDATE protège la ligne en base ; ce module sérialise en plus
les sections critiques à l'intérieur du process (SQLite, tests multi-threads).
Les clés sont toujours prises dans un ordre total pour éviter les interblocages.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

from stockengine.app.core.config import settings
from stockengine.services.errors import LockTimeout

logger = logging.getLogger(__name__)

LockKey = tuple[str, int]


def stock_key(stock_item_id: int) -> LockKey:
    return ("stock", int(stock_item_id))


def order_key(order_id: int) -> LockKey:
    return ("order", int(order_id))


def production_key(production_order_id: int) -> LockKey:
    return ("production", int(production_order_id))


def check_key(check_id: int) -> LockKey:
    return ("check", int(check_id))


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


class LockManager:
    """
    Un RLock par clé, créé à la demande et retiré dès que plus personne ne le
    tient ni ne l'attend : le registre ne garde que les clés en cours d'usage.
    """

    def __init__(self, timeout: float | None = None):
        self._timeout = timeout
        self._registry: dict[LockKey, _Entry] = {}
        self._registry_guard = threading.Lock()

    @property
    def timeout(self) -> float:
        return settings.LOCK_TIMEOUT_SECONDS if self._timeout is None else self._timeout

    @property
    def active_keys(self) -> list[LockKey]:
        with self._registry_guard:
            return sorted(self._registry)

    def _checkout(self, key: LockKey) -> threading.RLock:
        with self._registry_guard:
            entry = self._registry.get(key)
            if entry is None:
                entry = self._registry[key] = _Entry()
            entry.users += 1
            return entry.lock

    def _checkin(self, key: LockKey) -> None:
        with self._registry_guard:
            entry = self._registry[key]
            entry.users -= 1
            if entry.users == 0:
                del self._registry[key]

    def hold(self, keys: Iterable[LockKey], timeout: float | None = None) -> "_HeldLocks":
        ordered = sorted(set(keys))
        return _HeldLocks(self, ordered, self.timeout if timeout is None else timeout)


class _HeldLocks:
    def __init__(self, manager: LockManager, keys: list[LockKey], timeout: float):
        self._manager = manager
        self._keys = keys
        self._timeout = timeout
        self._acquired: list[tuple[LockKey, threading.RLock]] = []

    @property
    def keys(self) -> list[LockKey]:
        return list(self._keys)

    def __enter__(self) -> "_HeldLocks":
        for key in self._keys:
            lock = self._manager._checkout(key)
            if not lock.acquire(timeout=self._timeout):
                self._manager._checkin(key)
                logger.warning("Lock timeout on %s after %ss", key, self._timeout)
                self._release_all()
                raise LockTimeout(key, self._timeout)
            self._acquired.append((key, lock))
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._release_all()

    def _release_all(self) -> None:
        while self._acquired:
            key, lock = self._acquired.pop()
            lock.release()
            self._manager._checkin(key)


lock_manager = LockManager()
