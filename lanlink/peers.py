import logging
import threading
import time
from typing import Callable, Iterator

from lanlink.constants import Constants
from lanlink.errors import PeerNotFoundError

logger = logging.getLogger("__main__")


class PeerRecord:

    def __init__(self, name: str, address: str, port: int, last_seen: float):
        self.name = name
        self.address = address
        self.port = port
        self.last_seen = last_seen

    def touch(self, now: float) -> None:
        """Updates the last time the peer was seen, never moving it backwards."""
        if now > self.last_seen:
            self.last_seen = now

    def idle_sec(self, now: float) -> float:
        return max(0.0, now - self.last_seen)

    def endpoint(self) -> tuple[str, int]:
        return self.address, self.port

    def __repr__(self):
        return f"PeerRecord({self.name!r}, {self.address}:{self.port})"


class PeerSnapshot:
    """
    Lazy view of the registry for display. Every iteration takes a fresh copy of the table,
    so the same snapshot object can be iterated again later.
    """

    def __init__(self, registry: "PeerRegistry", now: float | None = None):
        self._registry = registry
        self._now = now

    def __iter__(self) -> Iterator[tuple[PeerRecord, float]]:
        now = self._now if self._now is not None else self._registry.clock()
        for record in self._registry.records():
            yield record, record.idle_sec(now)


class PeerRegistry:

    def __init__(self,
                 constants: Constants | None = None,
                 clock: Callable[[], float] = time.monotonic):
        self.constants = constants if constants is not None else Constants()
        self.clock = clock
        self._peers: dict[str, PeerRecord] = {}
        self._lock = threading.Lock()
        self._disconnect_listeners: list[Callable[[PeerRecord], None]] = []

    def add_disconnect_listener(self, listener: Callable[[PeerRecord], None]) -> None:
        self._disconnect_listeners.append(listener)

    def upsert(self, name: str, address: str, port: int, now: float | None = None) -> bool:
        """
        Refreshes the peer called name, or adds it. The address always comes from
        the datagram we just received, so a known peer is rebound to it.
        :return: True if the peer was not known before.
        """
        if now is None:
            now = self.clock()
        with self._lock:
            record = self._peers.get(name)
            if record is not None:
                record.touch(now)
                record.address = address
                record.port = port
                return False
            self._peers[name] = PeerRecord(name, address, port, now)
            return True

    def lookup(self, name: str) -> PeerRecord | None:
        with self._lock:
            return self._peers.get(name)

    def require(self, name: str) -> PeerRecord:
        record = self.lookup(name)
        if record is None:
            raise PeerNotFoundError(name)
        return record

    def reap_expired(self, now: float | None = None) -> list[PeerRecord]:
        """
        Removes every peer that has been silent for longer than PEER_INACTIVITY_SEC.
        :return: the removed records.
        """
        if now is None:
            now = self.clock()
        threshold = self.constants.PEER_INACTIVITY_SEC
        with self._lock:
            expired = [r for r in self._peers.values() if now - r.last_seen > threshold]
            for record in expired:
                del self._peers[record.name]

        for record in expired:
            logger.info(f"[Peer disconnected] {record.name} ({record.address})")
            for listener in self._disconnect_listeners:
                listener(record)
        return expired

    def records(self) -> list[PeerRecord]:
        with self._lock:
            return list(self._peers.values())

    def snapshot(self, now: float | None = None) -> PeerSnapshot:
        return PeerSnapshot(self, now)

    def __len__(self):
        with self._lock:
            return len(self._peers)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._peers
