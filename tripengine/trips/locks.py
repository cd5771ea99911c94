import threading
from contextlib import contextmanager
from typing import Dict


class BusLockRegistry:
    """One lock per bus, serializing trip start and end on that bus"""

    def __init__(self):
        self._locks: Dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, bus_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(bus_id)
            if lock is None:
                lock = self._locks[bus_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, bus_id: int):
        lock = self.lock_for(bus_id)
        with lock:
            yield


bus_locks = BusLockRegistry()
