"""
Acknowledgment and retransmission of frames sent over an unreliable transport.

Every TALK, FILE, CHUNK and END we send is registered here. The delivery monitor calls
tick() periodically: unacknowledged frames are resent unchanged until MAX_ATTEMPTS
retransmissions have been made, after which the frame is dropped and reported as failed.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, NamedTuple

from lanlink.constants import Constants
from lanlink.errors import DeliveryFailureError

logger = logging.getLogger("__main__")


class DeliveryKey(NamedTuple):
    message_id: int
    sequence: int
    destination: str


@dataclass
class PendingDelivery:
    key: DeliveryKey
    kind: str
    raw: bytes
    last_sent_at: float
    attempt_count: int = 0
    acked: bool = False
    failed: bool = False
    error: DeliveryFailureError | None = None
    settled: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    @property
    def message_id(self) -> int:
        return self.key.message_id

    @property
    def sequence(self) -> int:
        return self.key.sequence

    @property
    def destination(self) -> str:
        return self.key.destination


@dataclass
class TickReport:
    retransmitted: list[PendingDelivery] = field(default_factory=list)
    failed: list[PendingDelivery] = field(default_factory=list)
    cleared: int = 0  # acked entries removed by this tick

    def failures(self) -> list[DeliveryFailureError]:
        return [entry.error for entry in self.failed if entry.error is not None]


class DeliveryTracker:

    def __init__(self,
                 resend: Callable[[PendingDelivery], None],
                 constants: Constants | None = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        :param resend: called with an entry whenever its raw bytes must go out again.
        """
        self.resend = resend
        self.constants = constants if constants is not None else Constants()
        self.clock = clock
        self._pending: dict[DeliveryKey, PendingDelivery] = {}
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)

    def register(self,
                 kind: str,
                 message_id: int,
                 sequence: int,
                 destination: str,
                 raw: bytes,
                 now: float | None = None) -> PendingDelivery:
        """
        Starts tracking a frame that expects an ACK. The caller sends raw right after this.
        """
        if now is None:
            now = self.clock()
        key = DeliveryKey(message_id, sequence, destination)
        entry = PendingDelivery(key=key, kind=kind, raw=raw, last_sent_at=now)
        with self._lock:
            replaced = self._pending.get(key)
            self._pending[key] = entry
            self._changed.notify_all()
        if replaced is not None:
            logger.debug(f"Replacing pending {replaced.kind} id={message_id} seq={sequence}.")
            replaced.settled.set()
        return entry

    def on_ack(self, message_id: int, sequence: int, sender: str) -> PendingDelivery | None:
        """
        Marks the matching entry as acknowledged. Late or unknown ACKs return None.
        """
        key = DeliveryKey(message_id, sequence, sender)
        with self._lock:
            entry = self._pending.pop(key, None)
            if entry is None:
                return None
            entry.acked = True
            self._changed.notify_all()
        entry.settled.set()
        return entry

    def cancel(self, key: DeliveryKey) -> PendingDelivery | None:
        """Stops tracking an entry without reporting it as failed."""
        with self._lock:
            entry = self._pending.pop(key, None)
            if entry is not None:
                self._changed.notify_all()
        if entry is not None:
            entry.settled.set()
        return entry

    def tick(self, now: float | None = None) -> TickReport:
        if now is None:
            now = self.clock()
        report = TickReport()
        max_attempts = self.constants.MAX_ATTEMPTS
        retransmit_after = self.constants.RETRANSMIT_AFTER_SEC

        with self._lock:
            for key, entry in list(self._pending.items()):
                if entry.acked:
                    del self._pending[key]
                    report.cleared += 1
                elif entry.attempt_count >= max_attempts:
                    del self._pending[key]
                    entry.failed = True
                    entry.error = DeliveryFailureError(
                        kind=entry.kind,
                        destination=key.destination,
                        message_id=key.message_id,
                        sequence=key.sequence,
                        attempts=entry.attempt_count
                    )
                    report.failed.append(entry)
                elif now - entry.last_sent_at >= retransmit_after:
                    entry.attempt_count += 1
                    entry.last_sent_at = now
                    report.retransmitted.append(entry)
            if report.failed or report.cleared:
                self._changed.notify_all()

        for entry in report.failed:
            logger.error(f"[ERROR] {entry.error}")
            entry.settled.set()

        for entry in report.retransmitted:
            logger.info(f"[RETRANSMIT] {entry.kind} id={entry.message_id} seq={entry.sequence} "
                        f"to {entry.destination} (attempt {entry.attempt_count})")
            try:
                self.resend(entry)
            except OSError as e:
                logger.error(f"Could not retransmit {entry.kind} id={entry.message_id}: {e}")

        return report

    def wait_for_ack(self, entry: PendingDelivery, timeout: float) -> bool:
        """
        Blocks until the entry is acknowledged, dropped, or timeout seconds pass.
        :return: if it was acknowledged.
        """
        entry.settled.wait(timeout)
        return entry.acked

    def wait_until_settled(self, message_id: int, destination: str, timeout: float | None = None) -> bool:
        """
        Blocks until no frame with this message id is pending for destination.
        :return: False if the timeout ran out first.
        """
        with self._lock:
            return self._changed.wait_for(
                lambda: not any(k.message_id == message_id and k.destination == destination
                                for k in self._pending),
                timeout=timeout
            )

    def pending_count(self, message_id: int | None = None) -> int:
        with self._lock:
            if message_id is None:
                return len(self._pending)
            return sum(1 for k in self._pending if k.message_id == message_id)

    def get(self, key: DeliveryKey) -> PendingDelivery | None:
        with self._lock:
            return self._pending.get(key)

    def __len__(self):
        return self.pending_count()
