import threading
from contextlib import contextmanager
from typing import Dict, Hashable, List

class KeyedLock:
    """One re-entrant lock per key (license plate, spot id, ...).

    A key's lock only lives while some thread holds or waits for it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [锁, 持有或等待的线程数]
        self._locks: Dict[Hashable, List] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def _acquire_entry(self, key: Hashable) -> List:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry

    def _release_entry(self, key: Hashable, entry: List) -> None:
        with self._guard:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: Hashable):
        entry = self._acquire_entry(key)
        try:
            with entry[0]:
                yield
        finally:
            self._release_entry(key, entry)

    @contextmanager
    def hold_until_commit(self, key: Hashable, db):
        """Hold ``key`` until ``db`` has committed the work done in the block.

        Nothing is committed if the block raises; the caller rolls back.
        """
        with self.hold(key):
            yield
            db.commit()

plate_locks = KeyedLock()
spot_locks = KeyedLock()
