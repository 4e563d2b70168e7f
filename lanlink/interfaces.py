from abc import abstractmethod


class ITransport:
    """
    Interface for datagram transports: no ordering, delivery or uniqueness guarantees.
    """

    @abstractmethod
    def send(self, data: bytes, address: tuple[str, int]) -> None:
        """
        Sends one datagram to address.
        :param data:
        :param address: (host, port)
        :return:
        """
        pass

    @abstractmethod
    def broadcast(self, data: bytes) -> None:
        """
        Sends one datagram to every peer on the subnet, ourselves included.
        :param data:
        :return:
        """
        pass

    @abstractmethod
    def receive(self, timeout: float) -> tuple[bytes, tuple[str, int]] | None:
        """
        Waits up to timeout seconds for the next datagram.
        :param timeout:
        :return: (data, source address), or None if nothing arrived.
        """
        pass

    @abstractmethod
    def close(self) -> None:
        pass
