"""
Chunked file transfer on top of the delivery tracker.

FileSender runs one ``sendfile`` from start to end on the calling thread:
FILE header (must be acked) -> paced CHUNK stream -> wait for every chunk to settle ->
END with the whole-file hash. FileReceiver reassembles with positional writes, so the
order in which chunks arrive does not matter, and checks the hash on END.
"""
import logging
import os
import threading
import time
from dataclasses import dataclass, field

from tqdm import tqdm

from lanlink import codec
from lanlink.constants import Constants
from lanlink.delivery import PendingDelivery
from lanlink.errors import (FileWriteError, IntegrityFailureError, MissingOnDiskError, OutgoingFileNotFoundError,
                            UnacknowledgedControlError, UnknownTransferError)
from lanlink.frames import ChunkFrame, EndFrame, FileFrame
from lanlink.helpers import file_hash, make_sure_directory_exists

logger = logging.getLogger("__main__")


@dataclass
class TransferResult:
    file_id: int
    filename: str
    destination: str
    size: int
    chunk_count: int
    file_hash: str = ""
    failed_sequences: list[int] = field(default_factory=list)
    end_acknowledged: bool = False

    def succeeded(self) -> bool:
        return self.end_acknowledged and not self.failed_sequences


class FileSender:

    def __init__(self, node, show_progress: bool | None = None):
        """
        One instance per sendfile; several may run at once since each has its own file id.
        :param node: the Node that owns the tracker, registry and transport.
        """
        self.node = node
        self.constants: Constants = node.constants
        self.show_progress = self.constants.SHOW_PROGRESS if show_progress is None else show_progress

    def resolve_path(self, filename: str) -> str:
        path = os.path.join(self.node.outgoing_dir, filename)
        if not os.path.isfile(path):
            raise OutgoingFileNotFoundError(path)
        return path

    def send(self, peer_name: str, filename: str) -> TransferResult:
        """
        Sends filename from the outgoing directory to peer_name, blocking until the END
        header is acknowledged or its wait runs out.

        :raises OutgoingFileNotFoundError: the file is not in the outgoing directory.
        :raises PeerNotFoundError: peer_name is not a known peer.
        :raises UnacknowledgedControlError: the FILE header was never acknowledged; no chunk was sent.
        """
        path = self.resolve_path(filename)
        peer = self.node.registry.require(peer_name)

        file_id = self.node.ids.next_id()
        size = os.path.getsize(path)
        chunk_size = self.constants.CHUNK_SIZE
        chunk_count = (size + chunk_size - 1) // chunk_size
        result = TransferResult(file_id=file_id, filename=filename, destination=peer.name,
                                size=size, chunk_count=chunk_count)

        header = FileFrame(message_id=file_id, filename=filename, size=size, sender=self.node.name)
        header_entry = self.node.send_tracked(header, peer)
        logger.info(f"[FILE sent] id={file_id} -> {filename} ({size} bytes) to {peer.name}")
        self._wait_for_control_ack(header_entry, abort=True)

        chunk_entries = self._send_chunks(path, file_id, chunk_count, peer_name)

        timeout = self.constants.settle_timeout_sec()
        if not self.node.tracker.wait_until_settled(file_id, peer.name, timeout=timeout):
            logger.warning(f"Chunks of id={file_id} still pending after {timeout}s, finishing anyway.")
        for entry in chunk_entries:
            if entry.failed:
                result.failed_sequences.append(entry.sequence)
                logger.error(f"[ERROR] CHUNK id={file_id} seq={entry.sequence} was never acknowledged.")

        result.file_hash = file_hash(path)
        end = EndFrame(message_id=file_id, file_hash=result.file_hash, sender=self.node.name)
        end_entry = self.node.send_tracked(end, self.node.registry.lookup(peer_name) or peer)
        logger.info(f"[END sent] id={file_id} hash={result.file_hash}")
        result.end_acknowledged = self._wait_for_control_ack(end_entry, abort=False)
        if result.end_acknowledged:
            logger.info(f"[FILE delivered] id={file_id} {filename} verified by {peer.name}.")
        return result

    def _send_chunks(self, path: str, file_id: int, chunk_count: int, peer_name: str) -> list[PendingDelivery]:
        entries = []
        pacing = self.constants.CHUNK_PACING_SEC
        progress_bar = tqdm(total=chunk_count, unit="chunk", desc=os.path.basename(path),
                            disable=not self.show_progress)
        try:
            with open(path, "rb") as f:
                sequence = 0
                while True:
                    block = f.read(self.constants.CHUNK_SIZE)
                    if not block:
                        break
                    chunk = ChunkFrame(message_id=file_id, sequence=sequence,
                                       data=codec.encode_chunk_data(block), sender=self.node.name)
                    # the peer may have moved since the header, always use its latest address
                    peer = self.node.registry.require(peer_name)
                    entries.append(self.node.send_tracked(chunk, peer))
                    logger.debug(f"[CHUNK sent] id={file_id} seq={sequence} ({len(block)} bytes)")
                    progress_bar.update(1)
                    sequence += 1
                    if pacing:
                        time.sleep(pacing)
        finally:
            progress_bar.close()
        return entries

    def _wait_for_control_ack(self, entry: PendingDelivery, abort: bool) -> bool:
        timeout = self.constants.CONTROL_ACK_TIMEOUT_SEC
        if self.node.tracker.wait_for_ack(entry, timeout):
            return True
        error = UnacknowledgedControlError(entry.kind, entry.message_id, entry.destination, timeout)
        if abort:
            self.node.tracker.cancel(entry.key)
            raise error
        logger.warning(f"[WARNING] {error} The receiver may not have validated the file.")
        return False


class FileReceiver:

    def __init__(self, incoming_dir: str, constants: Constants | None = None):
        self.incoming_dir = incoming_dir
        self.constants = constants if constants is not None else Constants()
        self._filenames: dict[tuple[str, int], str] = {}
        self._lock = threading.Lock()

    def path_for(self, sender: str, file_id: int) -> str:
        """Where chunks of this transfer go: the declared filename, or a temporary name if none was declared."""
        with self._lock:
            filename = self._filenames.get((sender, file_id))
        if not filename:
            filename = self.constants.TEMP_FILENAME.format(file_id=file_id)
        return os.path.join(self.incoming_dir, filename)

    def declared_filename(self, sender: str, file_id: int) -> str | None:
        with self._lock:
            return self._filenames.get((sender, file_id))

    def accept_header(self, frame: FileFrame) -> str:
        """
        Remembers the filename of a new transfer and creates an empty file for it.
        :return: the path the file will be written to.
        """
        # never let a peer write outside the incoming directory
        filename = os.path.basename(frame.filename.replace("\\", "/"))
        if not filename or filename in (".", ".."):
            filename = self.constants.TEMP_FILENAME.format(file_id=frame.message_id)
        with self._lock:
            self._filenames[(frame.sender, frame.message_id)] = filename

        path = self.path_for(frame.sender, frame.message_id)
        try:
            make_sure_directory_exists(self.incoming_dir)
            with open(path, "wb"):
                pass
        except OSError as e:
            raise FileWriteError(frame.message_id, str(e)) from e
        return path

    def write_chunk(self, frame: ChunkFrame) -> int:
        """
        Writes the chunk at offset sequence * CHUNK_SIZE.
        :return: number of bytes written.
        :raises InvalidChunkEncodingError: the data is not valid base64; nothing is written.
        :raises FileWriteError:
        """
        data = codec.decode_chunk_data(frame.data, frame.message_id)
        path = self.path_for(frame.sender, frame.message_id)
        try:
            make_sure_directory_exists(self.incoming_dir)
            mode = "r+b" if os.path.exists(path) else "w+b"
            with open(path, mode) as f:
                f.seek(frame.sequence * self.constants.CHUNK_SIZE)
                f.write(data)
        except OSError as e:
            raise FileWriteError(frame.message_id, str(e)) from e
        return len(data)

    def verify(self, frame: EndFrame) -> str:
        """
        Checks the reassembled file against the hash in END. A corrupted file is deleted.
        :return: path of the verified file.
        """
        if self.declared_filename(frame.sender, frame.message_id) is None:
            raise UnknownTransferError(frame.message_id)
        path = self.path_for(frame.sender, frame.message_id)
        if not os.path.isfile(path):
            raise MissingOnDiskError(frame.message_id, path)

        actual = file_hash(path)
        if actual.lower() != frame.file_hash.strip().lower():
            os.remove(path)
            raise IntegrityFailureError(frame.message_id, f"expected {frame.file_hash}, got {actual}")
        return path
