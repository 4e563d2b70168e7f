"""
Wire encoding for frames: UTF-8 text, colon delimited, tag first.

Each frame kind has one free-text field (the message text, the NACK reason, the filename...).
Fields before it are split off from the left and fields after it from the right, so the
free-text field itself is never split and may contain colons.
"""
import base64
import binascii
import logging
from dataclasses import fields
from typing import Callable

from lanlink.constants import Constants
from lanlink.errors import DecodeError, InvalidChunkEncodingError, UnknownFrameError
from lanlink.frames import (AckFrame, ChunkFrame, EndFrame, FileFrame, Frame, FRAME_TYPES,
                            HeartbeatFrame, NackFrame, TalkFrame)

logger = logging.getLogger("__main__")

SEPARATOR = ":"


class FrameLayout:

    def __init__(self,
                 frame_type: type,
                 leading: list[tuple[str, Callable]],
                 free: str,
                 trailing: list[tuple[str, Callable]] | None = None):
        self.frame_type = frame_type
        self.leading = leading
        self.free = free
        self.trailing = trailing if trailing is not None else []

    def field_order(self) -> list[str]:
        return [name for name, _ in self.leading] + [self.free] + [name for name, _ in self.trailing]


LAYOUTS: dict[str, FrameLayout] = {
    HeartbeatFrame.TAG: FrameLayout(HeartbeatFrame, [], "sender"),
    TalkFrame.TAG: FrameLayout(TalkFrame, [("message_id", int), ("sender", str)], "text"),
    AckFrame.TAG: FrameLayout(AckFrame, [("message_id", int), ("sequence", int)], "sender"),
    NackFrame.TAG: FrameLayout(NackFrame, [("message_id", int)], "reason", [("sender", str)]),
    FileFrame.TAG: FrameLayout(FileFrame, [("message_id", int)], "filename", [("size", int), ("sender", str)]),
    ChunkFrame.TAG: FrameLayout(ChunkFrame, [("message_id", int), ("sequence", int)], "data",
                                [("sender", str)]),
    EndFrame.TAG: FrameLayout(EndFrame, [("message_id", int)], "file_hash", [("sender", str)]),
}

# every frame type must be described exactly once, with every dataclass field placed.
assert {layout.frame_type for layout in LAYOUTS.values()} == set(FRAME_TYPES)
for _layout in LAYOUTS.values():
    assert sorted(_layout.field_order()) == sorted(f.name for f in fields(_layout.frame_type))


def encode(frame: Frame) -> bytes:
    layout = LAYOUTS[frame.TAG]
    parts = [frame.TAG]
    for name, _ in layout.leading + layout.trailing:
        value = str(getattr(frame, name))
        if SEPARATOR in value:
            raise ValueError(f"Field {name} of a {frame.TAG} frame must not contain \"{SEPARATOR}\".")
    for name in layout.field_order():
        parts.append(str(getattr(frame, name)))
    return SEPARATOR.join(parts).encode(Constants.ENCODING)


def _convert(frame_tag: str, name: str, converter: Callable, raw: str):
    try:
        return converter(raw)
    except ValueError as error:
        raise DecodeError(f"{frame_tag} field {name} is not valid: {raw!r}") from error


def decode(data: bytes) -> Frame:
    """
    Turns a datagram into a frame.
    :raises DecodeError: if the datagram is not a well-formed frame.
    """
    try:
        text = data.decode(Constants.ENCODING)
    except UnicodeDecodeError as error:
        raise DecodeError("Datagram is not valid UTF-8.") from error

    tag, separator, rest = text.partition(SEPARATOR)
    layout = LAYOUTS.get(tag)
    if layout is None:
        raise UnknownFrameError(f"Unknown frame tag: {tag[:20]!r}")
    if not separator:
        raise DecodeError(f"{tag} frame has no fields.")

    values = {}
    leading_count = len(layout.leading)
    parts = rest.split(SEPARATOR, leading_count)
    if len(parts) < leading_count + 1:
        raise DecodeError(f"{tag} frame has too few fields.")
    for (name, converter), raw in zip(layout.leading, parts[:leading_count]):
        values[name] = _convert(tag, name, converter, raw)
    remainder = parts[leading_count]

    if layout.trailing:
        trailing_count = len(layout.trailing)
        pieces = remainder.rsplit(SEPARATOR, trailing_count)
        if len(pieces) < trailing_count + 1:
            raise DecodeError(f"{tag} frame has too few fields.")
        remainder = pieces[0]
        for (name, converter), raw in zip(layout.trailing, pieces[1:]):
            values[name] = _convert(tag, name, converter, raw)
    values[layout.free] = remainder

    if not values["sender"]:
        raise DecodeError(f"{tag} frame has an empty sender.")
    return layout.frame_type(**values)


def encode_chunk_data(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_chunk_data(encoded: str, message_id: int) -> bytes:
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as error:
        raise InvalidChunkEncodingError(message_id, str(error)) from error
