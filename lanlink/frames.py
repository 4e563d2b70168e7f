"""
The seven frames that travel between peers. Every datagram is exactly one of these;
FRAME_TYPES is the closed set the receive loop dispatches over.
"""
from dataclasses import dataclass
from typing import ClassVar, Union

from lanlink.constants import Constants


@dataclass(frozen=True)
class HeartbeatFrame:
    TAG: ClassVar[str] = "HEARTBEAT"
    sender: str


@dataclass(frozen=True)
class TalkFrame:
    TAG: ClassVar[str] = "TALK"
    message_id: int
    sender: str
    text: str

    def dedup_key(self) -> tuple:
        return self.TAG, self.sender, self.message_id


@dataclass(frozen=True)
class AckFrame:
    TAG: ClassVar[str] = "ACK"
    message_id: int
    sequence: int
    sender: str


@dataclass(frozen=True)
class NackFrame:
    TAG: ClassVar[str] = "NACK"
    message_id: int
    reason: str
    sender: str


@dataclass(frozen=True)
class FileFrame:
    TAG: ClassVar[str] = "FILE"
    message_id: int
    filename: str
    size: int
    sender: str

    def dedup_key(self) -> tuple:
        return self.TAG, self.sender, self.message_id


@dataclass(frozen=True)
class ChunkFrame:
    TAG: ClassVar[str] = "CHUNK"
    message_id: int
    sequence: int
    data: str  # base64 text, see codec.encode_chunk_data
    sender: str

    def dedup_key(self) -> tuple:
        return self.TAG, self.sender, self.message_id, self.sequence


@dataclass(frozen=True)
class EndFrame:
    TAG: ClassVar[str] = "END"
    message_id: int
    file_hash: str
    sender: str


Frame = Union[HeartbeatFrame, TalkFrame, AckFrame, NackFrame, FileFrame, ChunkFrame, EndFrame]

FRAME_TYPES: tuple[type, ...] = (
    HeartbeatFrame, TalkFrame, AckFrame, NackFrame, FileFrame, ChunkFrame, EndFrame
)

# Frames the sender keeps retransmitting until they are acknowledged.
ACK_EXPECTING_TYPES: tuple[type, ...] = (TalkFrame, FileFrame, ChunkFrame, EndFrame)


def sequence_of(frame: Frame) -> int:
    """Sequence used to correlate the frame with its ACK."""
    return getattr(frame, "sequence", Constants.NO_SEQUENCE)
