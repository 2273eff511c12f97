import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Tuple


class KeyedLock:
    """Per-key mutual exclusion inside one process.

    Locks are created on first use and dropped once nobody holds or waits
    for them, so the registry does not grow with every key ever seen.
    """

    def __init__(self, name: str):
        self.name = name
        self._guard = threading.Lock()
        self._locks: Dict[str, Tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (threading.Lock(), 0))
            self._locks[key] = (lock, users + 1)

        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                lock, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# lock order when nested: appointment -> slot -> payment -> wallet
slot_locks = KeyedLock("slot")
appointment_locks = KeyedLock("appointment")
payment_locks = KeyedLock("payment")
wallet_locks = KeyedLock("wallet")
