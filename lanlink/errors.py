import logging

logger = logging.getLogger("__main__")


class LanLinkError(Exception):
    pass


class DecodeError(LanLinkError):
    """Raised when a datagram is not a well-formed frame."""
    pass


class UnknownFrameError(DecodeError):
    """Raised when a datagram starts with a tag we do not know."""
    pass


class DuplicateMessageError(LanLinkError):
    """Raised when a frame was already processed inside the dedup window."""

    def __init__(self, key: tuple):
        super().__init__(f"Duplicate message {key}.")
        self.key = key


class PeerNotFoundError(LanLinkError):
    """Raised when a command names a peer that is not in the registry."""

    def __init__(self, name: str):
        super().__init__(f"Peer \"{name}\" not found.")
        self.name = name


class OutgoingFileNotFoundError(LanLinkError):
    """Raised when the file to send is not in the outgoing directory."""

    def __init__(self, path: str):
        super().__init__(f"File not found: {path}")
        self.path = path


class DeliveryFailureError(LanLinkError):
    """
    A frame was retransmitted MAX_ATTEMPTS times without being acknowledged.
    """

    def __init__(self, kind: str, destination: str, message_id: int, sequence: int, attempts: int):
        super().__init__(
            f"Failed to deliver {kind} id={message_id} seq={sequence} to {destination} "
            f"after {attempts} attempts."
        )
        self.kind = kind
        self.destination = destination
        self.message_id = message_id
        self.sequence = sequence
        self.attempts = attempts


class UnacknowledgedControlError(LanLinkError):
    """Raised when a FILE or END header is not acknowledged in time."""

    def __init__(self, kind: str, message_id: int, destination: str, timeout_sec: float):
        super().__init__(
            f"{kind} id={message_id} was not acknowledged by {destination} within {timeout_sec}s."
        )
        self.kind = kind
        self.message_id = message_id
        self.destination = destination


class TransferRejectedError(LanLinkError):
    """
    Receiver-side failure of a file transfer. The reason is what we put in the NACK
    sent back to the sender.
    """
    reason = "transfer rejected"

    def __init__(self, message_id: int, detail: str | None = None):
        super().__init__(f"{self.reason} (id={message_id})" + (f": {detail}" if detail else ""))
        self.message_id = message_id
        self.detail = detail

    def nack_reason(self) -> str:
        return self.reason


class UnknownTransferError(TransferRejectedError):
    """END arrived for a file id we never saw a FILE header for."""
    reason = "file not found"


class MissingOnDiskError(TransferRejectedError):
    """The partially written file disappeared before END."""
    reason = "file not found on disk"


class IntegrityFailureError(TransferRejectedError):
    """The hash in END does not match the reassembled file."""
    reason = "hash mismatch / corrupted"


class InvalidChunkEncodingError(TransferRejectedError):
    reason = "invalid encoding"


class FileWriteError(TransferRejectedError):
    """Writing the received file failed (header creation or a chunk)."""
    reason = "write failed"

    def nack_reason(self) -> str:
        if self.detail:
            return f"{self.reason}: {self.detail}"
        return self.reason


class IncorrectHandlerError(LanLinkError):
    """Raised when a frame type has no handler in the routing table."""
    pass


class StartupError(LanLinkError):
    """Fatal conditions found while starting the node."""
    pass


class PortInUseError(StartupError):
    pass


class InvalidNameError(StartupError):
    pass


class PeriodicTaskError(LanLinkError):
    """
    Wraps whatever a timer's function raised, so the timer can report it and carry on.
    """

    def __init__(self, task_name: str, cause: BaseException):
        super().__init__(f"[{task_name}] {type(cause).__name__}: {cause}")
        self.task_name = task_name
        self.cause = cause
