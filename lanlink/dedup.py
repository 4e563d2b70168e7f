import logging
import threading
import time
from typing import Callable, Hashable

from lanlink.constants import Constants

logger = logging.getLogger("__main__")


class DeduplicationWindow:
    """
    Remembers which messages we have already processed for DEDUP_TTL_SEC.

    A key is new exactly once inside the window; repeats do not extend its life.
    A message that was rejected is forgotten, so a retransmission of it is not a duplicate.
    Expired keys are purged whenever the window is consulted, so memory stays bounded
    by the traffic of the last DEDUP_TTL_SEC seconds.
    """

    def __init__(self,
                 constants: Constants | None = None,
                 clock: Callable[[], float] = time.monotonic):
        self.constants = constants if constants is not None else Constants()
        self.clock = clock
        self._first_seen: dict[Hashable, float] = {}
        self._lock = threading.Lock()

    def check_and_record(self, key: Hashable, now: float | None = None) -> bool:
        """
        :return: True if key was already seen inside the window, False if it is new (and now recorded).
        """
        if now is None:
            now = self.clock()
        ttl = self.constants.DEDUP_TTL_SEC
        with self._lock:
            expired = [k for k, seen in self._first_seen.items() if now - seen > ttl]
            for k in expired:
                del self._first_seen[k]

            if key in self._first_seen:
                return True
            self._first_seen[key] = now
            return False

    def forget(self, key: Hashable) -> None:
        """Drops key, so the next copy of that message is processed again."""
        with self._lock:
            self._first_seen.pop(key, None)

    def __len__(self):
        with self._lock:
            return len(self._first_seen)
