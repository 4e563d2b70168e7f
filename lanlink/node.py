"""
A peer on the LAN: owns the peer table, the dedup window and the pending-delivery table,
and wires them to the receive loop, the timers and the outgoing commands.
"""
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable

from lanlink import codec
from lanlink.constants import Constants
from lanlink.dedup import DeduplicationWindow
from lanlink.delivery import DeliveryTracker, PendingDelivery
from lanlink.discovery import DiscoveryBeacon
from lanlink.errors import DuplicateMessageError, InvalidNameError, TransferRejectedError
from lanlink.frames import (ACK_EXPECTING_TYPES, AckFrame, ChunkFrame, EndFrame, FileFrame, Frame,
                            HeartbeatFrame, NackFrame, TalkFrame, sequence_of)
from lanlink.helpers import MessageIdGenerator, Timer, is_valid_name
from lanlink.interfaces import ITransport
from lanlink.networking import DatagramServer
from lanlink.peers import PeerRecord, PeerRegistry
from lanlink.transfer import FileReceiver, FileSender, TransferResult

logger = logging.getLogger("__main__")


@dataclass
class DeviceRow:
    name: str
    address: str
    port: int
    idle_sec: float
    is_self: bool


class Node:

    def __init__(self,
                 name: str,
                 transport: ITransport,
                 incoming_dir: str | None = None,
                 outgoing_dir: str | None = None,
                 constants: Constants | None = None,
                 clock: Callable[[], float] = time.monotonic):
        if not is_valid_name(name):
            raise InvalidNameError(f"Invalid device name {name!r}: it must be non-empty, "
                                   f"without spaces or ':'.")
        self.name = name
        self.transport = transport
        self.constants = constants if constants is not None else Constants()
        self.incoming_dir = incoming_dir if incoming_dir is not None else self.constants.INCOMING_DIR
        self.outgoing_dir = outgoing_dir if outgoing_dir is not None else self.constants.OUTGOING_DIR

        self.ids = MessageIdGenerator()
        self.registry = PeerRegistry(self.constants, clock=clock)
        self.dedup = DeduplicationWindow(self.constants, clock=clock)
        self.tracker = DeliveryTracker(self._resend, self.constants, clock=clock)
        self.receiver = FileReceiver(self.incoming_dir, self.constants)
        self.beacon = DiscoveryBeacon(name, transport)
        self.server = DatagramServer(self, transport, self.constants)

        self.heartbeat_timer = Timer(self.constants.HEARTBEAT_INTERVAL_SEC, self.beacon.emit,
                                     auto_reset=True, name="heartbeat")
        self.reaper_timer = Timer(self.constants.PEER_REAP_INTERVAL_SEC, self.registry.reap_expired,
                                  auto_reset=True, name="peer-reaper")
        self.delivery_timer = Timer(self.constants.DELIVERY_MONITOR_INTERVAL_SEC, self.tracker.tick,
                                    auto_reset=True, name="delivery-monitor")

        self._message_listeners: list[Callable[[TalkFrame, tuple[str, int]], None]] = []
        self._server_thread: threading.Thread | None = None

    # Lifecycle

    def start(self) -> None:
        logger.info(f"[{self.name}] starting.")
        self._server_thread = self.server.thread_start()
        try:
            self.beacon.emit()
        except OSError as e:
            logger.error(f"Could not send the first heartbeat: {e}")
        for timer in (self.heartbeat_timer, self.reaper_timer, self.delivery_timer):
            timer.start()

    def stop(self) -> None:
        logger.info(f"[{self.name}] stopping.")
        for timer in (self.heartbeat_timer, self.reaper_timer, self.delivery_timer):
            timer.stop()
        if self._server_thread is not None:
            self.server.thread_stop(self._server_thread)
            self._server_thread = None
        self.transport.close()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    def add_message_listener(self, listener: Callable[[TalkFrame, tuple[str, int]], None]) -> None:
        self._message_listeners.append(listener)

    # Outgoing

    def send_frame(self, frame: Frame, address: tuple[str, int]) -> None:
        self.transport.send(codec.encode(frame), address)

    def send_tracked(self, frame: Frame, peer: PeerRecord) -> PendingDelivery:
        """
        Registers frame with the delivery tracker, then sends it to peer.
        """
        if not isinstance(frame, ACK_EXPECTING_TYPES):
            raise TypeError(f"{frame.TAG} frames are not acknowledged.")
        raw = codec.encode(frame)
        entry = self.tracker.register(frame.TAG, frame.message_id, sequence_of(frame), peer.name, raw)
        try:
            self.transport.send(raw, peer.endpoint())
        except OSError as e:
            # the delivery monitor will try again
            logger.error(f"Could not send {frame.TAG} id={frame.message_id} to {peer.name}: {e}")
        return entry

    def _resend(self, entry: PendingDelivery) -> None:
        peer = self.registry.lookup(entry.destination)
        if peer is None:
            logger.warning(f"Cannot retransmit {entry.kind} id={entry.message_id}: "
                           f"{entry.destination} is not a known peer.")
            return
        self.transport.send(entry.raw, peer.endpoint())

    def talk(self, peer_name: str, text: str) -> PendingDelivery:
        """
        Sends a text message to peer_name. Returns straight away; the returned entry
        can be waited on for the ACK.
        :raises PeerNotFoundError:
        """
        peer = self.registry.require(peer_name)
        frame = TalkFrame(message_id=self.ids.next_id(), sender=self.name, text=text)
        entry = self.send_tracked(frame, peer)
        logger.info(f"[TALK sent] id={frame.message_id} to {peer.name}")
        return entry

    def send_file(self, peer_name: str, filename: str, show_progress: bool | None = None) -> TransferResult:
        return FileSender(self, show_progress=show_progress).send(peer_name, filename)

    def devices(self, now: float | None = None) -> list[DeviceRow]:
        return [
            DeviceRow(name=record.name, address=record.address, port=record.port,
                      idle_sec=idle, is_self=record.name == self.name)
            for record, idle in self.registry.snapshot(now)
        ]

    def _ack(self, frame: Frame, address: tuple[str, int]) -> None:
        self.send_frame(AckFrame(message_id=frame.message_id, sequence=sequence_of(frame), sender=self.name),
                        address)

    def _nack(self, frame: Frame, reason: str, address: tuple[str, int]) -> None:
        self.send_frame(NackFrame(message_id=frame.message_id, reason=reason, sender=self.name), address)

    def _reject(self, frame: Frame, error: TransferRejectedError, address: tuple[str, int]) -> None:
        """
        NACKs a frame we could not process. It is also dropped from the dedup window,
        so a retransmission is tried again instead of being acknowledged as a duplicate.
        """
        dedup_key = getattr(frame, "dedup_key", None)
        if dedup_key is not None:
            self.dedup.forget(dedup_key())
        self._nack(frame, error.nack_reason(), address)

    # Incoming, called by the DatagramServer with the frame and the datagram's source address

    def server_heartbeat(self, frame: HeartbeatFrame, address: tuple[str, int]) -> None:
        # the DatagramServer already refreshed the sender in the registry
        logger.debug(f"[HEARTBEAT received] {frame.sender} ({address[0]})")

    def server_talk(self, frame: TalkFrame, address: tuple[str, int]) -> None:
        logger.info(f"[TALK received] id={frame.message_id} from {frame.sender} ({address[0]}): {frame.text}")
        for listener in self._message_listeners:
            listener(frame, address)
        self._ack(frame, address)

    def server_ack(self, frame: AckFrame, address: tuple[str, int]) -> None:
        entry = self.tracker.on_ack(frame.message_id, frame.sequence, frame.sender)
        kind = entry.kind if entry is not None else "UNKNOWN"
        logger.debug(f"[ACK received] {kind} id={frame.message_id} seq={frame.sequence} "
                     f"from {frame.sender} ({address[0]})")

    def server_nack(self, frame: NackFrame, address: tuple[str, int]) -> None:
        # informational only: recovering is up to the user, by running sendfile again
        logger.warning(f"[NACK received] id={frame.message_id} from {frame.sender} ({address[0]}): {frame.reason}")

    def server_file(self, frame: FileFrame, address: tuple[str, int]) -> None:
        logger.info(f"[FILE received] id={frame.message_id} File: {frame.filename}, Size: {frame.size} bytes "
                    f"from {frame.sender} ({address[0]})")
        try:
            self.receiver.accept_header(frame)
        except TransferRejectedError as e:
            logger.error(f"[ERROR] {e}")
            self._reject(frame, e, address)
            return
        self._ack(frame, address)

    def server_chunk(self, frame: ChunkFrame, address: tuple[str, int]) -> None:
        try:
            written = self.receiver.write_chunk(frame)
        except TransferRejectedError as e:
            logger.error(f"[ERROR] CHUNK id={frame.message_id} seq={frame.sequence}: {e}")
            self._reject(frame, e, address)
            return
        logger.debug(f"[CHUNK received] id={frame.message_id} seq={frame.sequence} ({written} bytes) "
                     f"from {frame.sender} ({address[0]})")
        self._ack(frame, address)

    def server_end(self, frame: EndFrame, address: tuple[str, int]) -> None:
        try:
            path = self.receiver.verify(frame)
        except TransferRejectedError as e:
            logger.error(f"[ERROR] END id={frame.message_id} from {frame.sender}: {e}")
            self._reject(frame, e, address)
            return
        logger.info(f"[FILE complete] id={frame.message_id} saved to {os.path.abspath(path)}, hash verified.")
        self._ack(frame, address)

    def server_duplicate(self, frame: Frame, address: tuple[str, int], error: DuplicateMessageError) -> None:
        """
        A frame we already processed: not processed again, but acknowledged again in case
        our first ACK was the datagram that got lost.
        """
        logger.debug(f"Re-acknowledging {error.key}.")
        self._ack(frame, address)
