import logging
import threading
from typing import Callable

from lanlink import codec
from lanlink.constants import Constants
from lanlink.errors import DecodeError, DuplicateMessageError, IncorrectHandlerError, LanLinkError
from lanlink.frames import FRAME_TYPES, Frame
from lanlink.interfaces import ITransport

logger = logging.getLogger("__main__")


def handler_name(frame_type: type) -> str:
    # Prefix with "server_" so that the method name is unambiguous, eg: server_chunk.
    return "server_" + frame_type.TAG.lower()


class DatagramServer:
    """
    The only reader of the transport. Decodes each datagram, drops duplicates and
    hands the frame to the node method for its type.
    """

    def __init__(self, node, transport: ITransport, constants: Constants | None = None):
        self.node = node
        self.transport = transport
        self.constants = constants if constants is not None else Constants()
        self._stop_event = threading.Event()
        self.handled = 0

        self.routing_methods: dict[type, Callable] = {}
        for frame_type in FRAME_TYPES:
            method = getattr(node, handler_name(frame_type), None)
            if not callable(method):
                raise IncorrectHandlerError(f"Node has no handler {handler_name(frame_type)} for {frame_type.TAG}.")
            self.routing_methods[frame_type] = method

    def handle_datagram(self, data: bytes, address: tuple[str, int]) -> Frame | None:
        """
        Processes one datagram. Never raises for a bad datagram or a failing handler,
        so one bad input cannot stop the receive loop.
        :return: the decoded frame, or None if it was dropped as malformed.
        """
        try:
            frame = codec.decode(data)
        except DecodeError as e:
            logger.warning(f"[Dropped] Malformed datagram from {address[0]}:{address[1]}: {e}")
            return None

        dedup_key = getattr(frame, "dedup_key", None)
        try:
            if self.node.registry.upsert(frame.sender, address[0], address[1]):
                logger.info(f"[Peer connected] {frame.sender} ({address[0]})")
            if dedup_key is not None and self.node.dedup.check_and_record(dedup_key()):
                duplicate = DuplicateMessageError(dedup_key())
                logger.info(f"[DUPLICATE] {frame.TAG} id={frame.message_id} from {frame.sender} ignored.")
                self.node.server_duplicate(frame, address, duplicate)
            else:
                self.routing_methods[type(frame)](frame, address)
        except (LanLinkError, OSError) as e:
            if dedup_key is not None:
                self.node.dedup.forget(dedup_key())
            logger.error(f"[Server] Error handling {frame.TAG} from {frame.sender}: {e}")
        self.handled += 1
        return frame

    def start(self) -> None:
        """
        Receives on the calling thread until stop() is called.
        :return:
        """
        self._stop_event.clear()
        self.serve_forever()

    def serve_forever(self) -> None:
        logger.info("[Server] Starting receive loop...")
        timeout = self.constants.RECEIVE_TIMEOUT_SEC
        while not self._stop_event.is_set():
            try:
                received = self.transport.receive(timeout)
            except OSError as e:
                if self._stop_event.is_set():
                    break
                logger.error(f"[Server] Error receiving datagram: {e}")
                self._stop_event.wait(timeout)
                continue
            if received is None:
                continue
            data, address = received
            try:
                self.handle_datagram(data, address)
            except Exception as e:
                # a bug in a handler still must not take the receive loop down with it
                logger.exception(f"[Server] Unexpected error handling datagram from {address[0]}: {e}")
        logger.info("[Server] Receive loop stopped.")

    def stop(self) -> None:
        self._stop_event.set()

    def thread_start(self) -> threading.Thread:
        """
        Starts the receive loop on a thread that is returned.
        :return: Thread the server is running on
        """
        self._stop_event.clear()
        thread = threading.Thread(target=self.serve_forever, name="receive-loop", daemon=True)
        thread.start()
        return thread

    def thread_stop(self, thread: threading.Thread) -> None:
        """
        Stops the receive loop and waits for its thread to finish.
        :param thread:
        :return:
        """
        self.stop()
        thread.join()
        logger.info("[Server] Server stopped.")
