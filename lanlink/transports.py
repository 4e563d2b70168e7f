import logging
import queue
import random
import socket
import threading
from typing import Callable

from lanlink.constants import Constants
from lanlink.errors import PortInUseError
from lanlink.interfaces import ITransport

logger = logging.getLogger("__main__")


class UDPTransport(ITransport):

    def __init__(self,
                 port: int = Constants.PORT,
                 broadcast_address: str = Constants.BROADCAST_ADDRESS,
                 bind_address: str = "",
                 buffer_size: int = Constants.BUFFER_SIZE):
        """
        Binds a UDP socket on port, with broadcasting enabled.
        :raises PortInUseError: if the port cannot be bound.
        """
        self.port = port
        self.broadcast_address = broadcast_address
        self.buffer_size = buffer_size
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            self.sock.bind((bind_address, port))
        except OSError as e:
            self.sock.close()
            raise PortInUseError(f"Could not bind UDP port {port}: {e}") from e
        logger.info(f"[Transport] Listening on UDP port {port}.")

    def send(self, data: bytes, address: tuple[str, int]) -> None:
        self.sock.sendto(data, address)

    def broadcast(self, data: bytes) -> None:
        self.sock.sendto(data, (self.broadcast_address, self.port))

    def receive(self, timeout: float) -> tuple[bytes, tuple[str, int]] | None:
        self.sock.settimeout(timeout)
        try:
            data, address = self.sock.recvfrom(self.buffer_size)
        except socket.timeout:
            return None
        return data, (address[0], address[1])

    def close(self) -> None:
        self.sock.close()


class VirtualNetwork:
    """
    For unit testing: an in-memory broadcast domain that VirtualTransports attach to.

    drop decides whether a datagram is lost, tamper may rewrite it on the way.
    Both get (data, source, destination).
    """

    def __init__(self,
                 drop: Callable[[bytes, tuple, tuple], bool] | None = None,
                 tamper: Callable[[bytes, tuple, tuple], bytes] | None = None,
                 port: int = Constants.PORT):
        self.drop = drop
        self.tamper = tamper
        self.port = port
        self._inboxes: dict[tuple[str, int], queue.Queue] = {}
        self._lock = threading.Lock()
        self.sent: list[tuple[bytes, tuple, tuple]] = []

    def attach(self, host: str) -> "VirtualTransport":
        address = (host, self.port)
        with self._lock:
            if address in self._inboxes:
                raise PortInUseError(f"{host}:{self.port} is already attached.")
            self._inboxes[address] = queue.Queue()
        return VirtualTransport(self, address)

    def detach(self, address: tuple[str, int]) -> None:
        with self._lock:
            self._inboxes.pop(address, None)

    def deliver(self, data: bytes, source: tuple[str, int], destination: tuple[str, int]) -> None:
        with self._lock:
            self.sent.append((data, source, destination))
            inbox = self._inboxes.get(destination)
        if inbox is None:
            return
        if self.drop is not None and self.drop(data, source, destination):
            return
        if self.tamper is not None:
            data = self.tamper(data, source, destination)
        inbox.put((data, source))

    def broadcast(self, data: bytes, source: tuple[str, int]) -> None:
        with self._lock:
            destinations = list(self._inboxes)
        for destination in destinations:
            self.deliver(data, source, destination)

    def inbox(self, address: tuple[str, int]) -> queue.Queue | None:
        with self._lock:
            return self._inboxes.get(address)


class VirtualTransport(ITransport):
    """
    For unit testing, carries datagrams through a VirtualNetwork instead of a socket.
    """

    def __init__(self, network: VirtualNetwork, address: tuple[str, int]):
        self.network = network
        self.address = address
        self.closed = False

    def send(self, data: bytes, address: tuple[str, int]) -> None:
        if self.closed:
            raise OSError("Transport is closed.")
        self.network.deliver(data, self.address, address)

    def broadcast(self, data: bytes) -> None:
        if self.closed:
            raise OSError("Transport is closed.")
        self.network.broadcast(data, self.address)

    def receive(self, timeout: float) -> tuple[bytes, tuple[str, int]] | None:
        inbox = self.network.inbox(self.address)
        if self.closed or inbox is None:
            raise OSError("Transport is closed.")
        try:
            return inbox.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self.closed = True
        self.network.detach(self.address)


def lossy(rate: float, seed: int | None = None) -> Callable[[bytes, tuple, tuple], bool]:
    """Drop function for VirtualNetwork that loses roughly rate of all datagrams."""
    rng = random.Random(seed)

    def drop(data: bytes, source: tuple, destination: tuple) -> bool:
        return rng.random() < rate

    return drop
