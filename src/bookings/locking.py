from contextlib import contextmanager
from typing import Dict, Iterator
import threading

from src.bookings.exceptions import StorageError

class StationLockRegistry:
    """Hand out one lock per station id.

    Operations on different stations never wait on each other; operations on
    the same station run one at a time within this process.  Cross-process
    safety comes from the conditional updates in the services.
    """

    def __init__(self, timeout: float = 10.0):
        self._timeout = timeout
        self._locks: Dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, station_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(station_id)
            if lock is None:
                lock = self._locks[station_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, station_id: int) -> Iterator[None]:
        """Hold the station lock, raising ``StorageError`` on timeout"""
        lock = self._lock_for(station_id)
        if not lock.acquire(timeout=self._timeout):
            raise StorageError(f"Station {station_id} is busy, retry the request")
        try:
            yield
        finally:
            lock.release()
