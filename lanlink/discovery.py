import logging

from lanlink import codec
from lanlink.frames import HeartbeatFrame
from lanlink.interfaces import ITransport

logger = logging.getLogger("__main__")


class DiscoveryBeacon:
    """
    Announces us to the subnet. Receiving heartbeats is the receive loop's job,
    which upserts the registry with the datagram's source address.
    """

    def __init__(self, name: str, transport: ITransport):
        self.name = name
        self.transport = transport
        self._heartbeat = codec.encode(HeartbeatFrame(sender=name))
        self.emitted = 0

    def emit(self) -> None:
        self.transport.broadcast(self._heartbeat)
        self.emitted += 1
        logger.debug(f"[HEARTBEAT sent] {self.name}")
