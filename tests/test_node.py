import hashlib
import os
import tempfile
import threading
import time
import unittest

from cli import CommandConsole
from lanlink import codec
from lanlink.constants import Constants
from lanlink.errors import (IncorrectHandlerError, InvalidNameError, OutgoingFileNotFoundError, PeerNotFoundError,
                            PortInUseError, UnacknowledgedControlError)
from lanlink.frames import AckFrame, ChunkFrame, EndFrame, FileFrame, HeartbeatFrame, NackFrame, TalkFrame
from lanlink.helpers import MessageIdGenerator
from lanlink.networking import DatagramServer
from lanlink.node import Node
from lanlink.transports import VirtualNetwork, lossy

ALICE = ("10.0.0.1", Constants.PORT)
BOB = ("10.0.0.2", Constants.PORT)


def fast_constants() -> Constants:
    constants = Constants()
    constants.HEARTBEAT_INTERVAL_SEC = 0.2
    constants.PEER_REAP_INTERVAL_SEC = 0.2
    constants.DELIVERY_MONITOR_INTERVAL_SEC = 0.05
    constants.RETRANSMIT_AFTER_SEC = 0.1
    constants.CONTROL_ACK_TIMEOUT_SEC = 2
    constants.CHUNK_PACING_SEC = 0
    constants.RECEIVE_TIMEOUT_SEC = 0.05
    constants.SHOW_PROGRESS = False
    return constants


def wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def frames_sent(network: VirtualNetwork, source: tuple, frame_type: type) -> list:
    frames = []
    for data, sent_from, _ in list(network.sent):
        if sent_from != source:
            continue
        frame = codec.decode(data)
        if isinstance(frame, frame_type):
            frames.append(frame)
    return frames


class NodeTestCase(unittest.TestCase):
    """Two nodes, alice and bob, on one VirtualNetwork. Neither is started."""

    drop = None
    tamper = None

    def setUp(self):
        self.directory = tempfile.TemporaryDirectory()
        self.network = VirtualNetwork(drop=self.drop, tamper=self.tamper)
        self.alice = self.make_node("alice", ALICE[0])
        self.bob = self.make_node("bob", BOB[0])

    def tearDown(self):
        for node in (self.alice, self.bob):
            node.stop()
        self.directory.cleanup()

    def make_node(self, name: str, host: str) -> Node:
        root = os.path.join(self.directory.name, name)
        return Node(name, self.network.attach(host),
                    incoming_dir=os.path.join(root, "incoming"),
                    outgoing_dir=os.path.join(root, "outgoing"),
                    constants=fast_constants())

    def start_both(self) -> None:
        self.alice.start()
        self.bob.start()
        self.assertTrue(wait_until(lambda: "bob" in self.alice.registry and "alice" in self.bob.registry),
                        "Heartbeats should make the nodes discover each other.")
        self.assertGreaterEqual(self.alice.beacon.emitted, 1)

    def write_outgoing(self, node: Node, filename: str, contents: bytes) -> None:
        os.makedirs(node.outgoing_dir, exist_ok=True)
        with open(os.path.join(node.outgoing_dir, filename), "wb") as f:
            f.write(contents)


class HandlerTest(NodeTestCase):
    """Feeds datagrams straight into bob's server, without any threads."""

    def deliver(self, frame) -> None:
        self.bob.server.handle_datagram(codec.encode(frame), ALICE)

    def test_talk_is_acknowledged(self):
        received = []
        self.bob.add_message_listener(lambda frame, address: received.append(frame.text))
        self.deliver(TalkFrame(message_id=7, sender="alice", text="hi:there"))

        self.assertEqual(received, ["hi:there"])
        self.assertIn((b"ACK:7:-1:bob", BOB, ALICE), self.network.sent)
        self.assertEqual(self.bob.registry.require("alice").endpoint(), ALICE)

    def test_duplicate_is_acknowledged_but_not_processed(self):
        received = []
        self.bob.add_message_listener(lambda frame, address: received.append(frame))
        frame = TalkFrame(message_id=3, sender="alice", text="once")
        self.deliver(frame)
        self.deliver(frame)

        self.assertEqual(len(received), 1)
        self.assertEqual(len(frames_sent(self.network, BOB, AckFrame)), 2)

    def test_malformed_datagram_is_dropped(self):
        self.assertIsNone(self.bob.server.handle_datagram(b"TALK:not-a-number:alice:hi", ALICE))
        self.assertIsNone(self.bob.server.handle_datagram(b"\xff\x00", ALICE))
        self.assertEqual(self.network.sent, [])
        self.assertNotIn("alice", self.bob.registry)
        self.assertEqual(self.bob.server.handled, 0)

    def test_heartbeat_registers_peer(self):
        self.deliver(HeartbeatFrame("alice"))
        self.assertEqual(self.bob.registry.require("alice").endpoint(), ALICE)
        self.assertEqual(self.network.sent, [], "Heartbeats are never acknowledged.")
        self.assertEqual(self.bob.server.handled, 1)

    def test_ack_settles_pending_delivery(self):
        self.bob.registry.upsert("alice", *ALICE)
        entry = self.bob.talk("alice", "hello")
        self.deliver(AckFrame(message_id=entry.message_id, sequence=-1, sender="alice"))
        self.assertTrue(entry.acked)
        self.assertEqual(len(self.bob.tracker), 0)

    def test_file_transfer_frames(self):
        contents = os.urandom(3000)
        self.deliver(FileFrame(1, "data.bin", len(contents), "alice"))
        for offset, sequence in ((2048, 2), (0, 0), (1024, 1)):
            data = codec.encode_chunk_data(contents[offset:offset + 1024])
            self.deliver(ChunkFrame(1, sequence, data, "alice"))
        self.deliver(EndFrame(1, hashlib.sha256(contents).hexdigest(), "alice"))

        acks = [(ack.message_id, ack.sequence) for ack in frames_sent(self.network, BOB, AckFrame)]
        self.assertEqual(acks, [(1, -1), (1, 2), (1, 0), (1, 1), (1, -1)])
        with open(os.path.join(self.bob.incoming_dir, "data.bin"), "rb") as f:
            self.assertEqual(f.read(), contents)

    def test_corrupted_file_is_nacked_and_deleted(self):
        self.deliver(FileFrame(1, "data.bin", 4, "alice"))
        self.deliver(ChunkFrame(1, 0, codec.encode_chunk_data(b"abcd"), "alice"))
        self.deliver(EndFrame(1, hashlib.sha256(b"abce").hexdigest(), "alice"))

        nacks = frames_sent(self.network, BOB, NackFrame)
        self.assertEqual(nacks, [NackFrame(1, "hash mismatch / corrupted", "bob")])
        self.assertFalse(os.path.exists(os.path.join(self.bob.incoming_dir, "data.bin")))

    def test_invalid_chunk_is_nacked(self):
        self.deliver(FileFrame(1, "data.bin", 4, "alice"))
        self.deliver(ChunkFrame(1, 0, "@@@@", "alice"))
        self.assertEqual(frames_sent(self.network, BOB, NackFrame), [NackFrame(1, "invalid encoding", "bob")])

    def test_rejected_chunk_is_not_acknowledged_when_resent(self):
        self.deliver(FileFrame(1, "data.bin", 4, "alice"))
        bad = ChunkFrame(1, 0, "%%%", "alice")
        self.deliver(bad)
        self.deliver(bad)

        acks = [(ack.message_id, ack.sequence) for ack in frames_sent(self.network, BOB, AckFrame)]
        self.assertEqual(acks, [(1, -1)], "Only the FILE header should be acknowledged.")
        self.assertEqual(frames_sent(self.network, BOB, NackFrame), [NackFrame(1, "invalid encoding", "bob")] * 2)

        # once a good copy arrives it is written and acknowledged
        self.deliver(ChunkFrame(1, 0, codec.encode_chunk_data(b"abcd"), "alice"))
        self.assertIn(AckFrame(1, 0, "bob"), frames_sent(self.network, BOB, AckFrame))
        with open(os.path.join(self.bob.incoming_dir, "data.bin"), "rb") as f:
            self.assertEqual(f.read(), b"abcd")

    def test_rejected_header_is_not_acknowledged_when_resent(self):
        # a regular file where the incoming directory should be
        blocker = os.path.join(self.directory.name, "blocker")
        with open(blocker, "w"):
            pass
        self.bob.receiver.incoming_dir = blocker
        header = FileFrame(1, "data.bin", 4, "alice")
        self.deliver(header)
        self.deliver(header)

        self.assertEqual(frames_sent(self.network, BOB, AckFrame), [])
        nacks = frames_sent(self.network, BOB, NackFrame)
        self.assertEqual(len(nacks), 2)
        self.assertTrue(all(nack.reason.startswith("write failed") for nack in nacks))

    def test_end_for_unknown_file_is_nacked(self):
        self.deliver(EndFrame(5, "00", "alice"))
        self.assertEqual(frames_sent(self.network, BOB, NackFrame), [NackFrame(5, "file not found", "bob")])

    def test_nack_is_only_logged(self):
        self.deliver(NackFrame(1, "hash mismatch / corrupted", "alice"))
        self.assertEqual(self.network.sent, [])

    def test_devices_marks_ourselves(self):
        self.bob.server.handle_datagram(codec.encode(HeartbeatFrame("bob")), BOB)
        self.deliver(HeartbeatFrame("alice"))
        rows = {row.name: row for row in self.bob.devices()}
        self.assertTrue(rows["bob"].is_self)
        self.assertFalse(rows["alice"].is_self)
        self.assertEqual(rows["alice"].address, ALICE[0])

    def test_talk_to_unknown_peer(self):
        with self.assertRaises(PeerNotFoundError):
            self.bob.talk("carol", "anyone there?")

    def test_send_missing_file(self):
        self.bob.registry.upsert("alice", *ALICE)
        with self.assertRaises(OutgoingFileNotFoundError):
            self.bob.send_file("alice", "nothing.txt")


class ConstructionTest(unittest.TestCase):

    def test_invalid_name(self):
        network = VirtualNetwork()
        with self.assertRaises(InvalidNameError):
            Node("two words", network.attach("10.0.0.1"))

    def test_address_already_attached(self):
        network = VirtualNetwork()
        network.attach("10.0.0.1")
        with self.assertRaises(PortInUseError):
            network.attach("10.0.0.1")

    def test_every_frame_needs_a_handler(self):
        network = VirtualNetwork()
        with self.assertRaises(IncorrectHandlerError):
            DatagramServer(object(), network.attach("10.0.0.1"))


class ExchangeTest(NodeTestCase):

    def test_talk(self):
        received = []
        self.bob.add_message_listener(lambda frame, address: received.append(frame))
        self.start_both()
        self.alice.ids = MessageIdGenerator(start=7)

        entry = self.alice.talk("bob", "hi:there")
        self.assertTrue(self.alice.tracker.wait_for_ack(entry, timeout=5))
        self.assertEqual([(f.message_id, f.sender, f.text) for f in received], [(7, "alice", "hi:there")])
        self.assertIn(AckFrame(7, -1, "bob"), frames_sent(self.network, BOB, AckFrame))

    def test_send_file(self):
        contents = os.urandom(3000)
        self.write_outgoing(self.alice, "data.bin", contents)
        self.start_both()

        result = self.alice.send_file("bob", "data.bin")

        self.assertTrue(result.succeeded())
        self.assertEqual(result.chunk_count, 3)
        # a slow ACK may cause a retransmission, so look at each sequence once
        sizes = {c.sequence: len(codec.decode_chunk_data(c.data, c.message_id))
                 for c in frames_sent(self.network, ALICE, ChunkFrame)}
        self.assertEqual([sizes[sequence] for sequence in sorted(sizes)], [1024, 1024, 952])
        path = os.path.join(self.bob.incoming_dir, "data.bin")
        with open(path, "rb") as f:
            self.assertEqual(f.read(), contents)
        self.assertEqual(result.file_hash, hashlib.sha256(contents).hexdigest())

    def test_send_file_to_silent_peer_is_aborted(self):
        self.write_outgoing(self.alice, "data.bin", b"abc")
        self.alice.constants.CONTROL_ACK_TIMEOUT_SEC = 0.3
        self.alice.start()
        # bob is known but never answers
        self.alice.registry.upsert("bob", *BOB)

        with self.assertRaises(UnacknowledgedControlError):
            self.alice.send_file("bob", "data.bin")
        self.assertEqual(frames_sent(self.network, ALICE, ChunkFrame), [], "No chunk is sent without a FILE ACK.")
        self.assertEqual(len(self.alice.tracker), 0)

    def test_receive_loop_survives_a_failing_handler(self):
        calls = []

        def broken(frame, address):
            calls.append(frame)
            raise RuntimeError("handler bug")

        self.bob.server.routing_methods[TalkFrame] = broken
        self.start_both()
        self.alice.talk("bob", "first")
        self.assertTrue(wait_until(lambda: calls))

        self.alice.send_frame(HeartbeatFrame("carol"), BOB)
        self.assertTrue(wait_until(lambda: "carol" in self.bob.registry),
                        "Datagrams after the failure should still be handled.")


class LostChunkTest(NodeTestCase):
    """The first transmission of chunk 1 never arrives."""

    def setUp(self):
        self.dropped = []
        super().setUp()

    def drop(self, data, source, destination):
        if data.startswith(b"CHUNK:") and data.split(b":")[2] == b"1" and not self.dropped:
            self.dropped.append(data)
            return True
        return False

    def test_chunk_is_retransmitted(self):
        contents = os.urandom(2500)
        self.write_outgoing(self.alice, "data.bin", contents)
        self.start_both()

        result = self.alice.send_file("bob", "data.bin")

        self.assertEqual(len(self.dropped), 1)
        self.assertTrue(result.succeeded())
        with open(os.path.join(self.bob.incoming_dir, "data.bin"), "rb") as f:
            self.assertEqual(f.read(), contents)


class LostAckTest(NodeTestCase):
    """bob's first ACK never reaches alice, so alice sends the TALK again."""

    def setUp(self):
        self.dropped = []
        super().setUp()

    def drop(self, data, source, destination):
        if data.startswith(b"ACK:") and not self.dropped:
            self.dropped.append(data)
            return True
        return False

    def test_talk_is_delivered_once(self):
        received = []
        self.bob.add_message_listener(lambda frame, address: received.append(frame))
        self.start_both()

        entry = self.alice.talk("bob", "only once please")
        self.assertTrue(self.alice.tracker.wait_for_ack(entry, timeout=5))
        self.assertEqual(len(received), 1)
        self.assertGreaterEqual(entry.attempt_count, 1)
        self.assertGreaterEqual(len(frames_sent(self.network, BOB, AckFrame)), 2)



class UnreachableChunkTest(NodeTestCase):
    """Chunk 1 never arrives, however often it is sent."""

    def drop(self, data, source, destination):
        return data.startswith(b"CHUNK:") and data.split(b":")[2] == b"1"

    def test_transfer_finishes_and_reports_the_lost_chunk(self):
        self.write_outgoing(self.alice, "data.bin", os.urandom(3000))
        self.alice.constants.CONTROL_ACK_TIMEOUT_SEC = 0.5
        self.start_both()

        result = self.alice.send_file("bob", "data.bin")

        self.assertEqual(result.failed_sequences, [1])
        self.assertFalse(result.succeeded())
        self.assertEqual(len([c for c in frames_sent(self.network, ALICE, ChunkFrame) if c.sequence == 1]),
                         self.alice.constants.MAX_ATTEMPTS + 1)
        self.assertTrue(frames_sent(self.network, ALICE, EndFrame), "END is sent even after a failed chunk.")
        self.assertTrue(wait_until(lambda: NackFrame(result.file_id, "hash mismatch / corrupted", "bob")
                                   in frames_sent(self.network, BOB, NackFrame)))
        self.assertFalse(os.path.exists(os.path.join(self.bob.incoming_dir, "data.bin")))


class CorruptedChunkTest(NodeTestCase):
    """Every copy of chunk 1 has its bytes flipped on the way to bob."""

    def tamper(self, data, source, destination):
        if not data.startswith(b"CHUNK:"):
            return data
        chunk = codec.decode(data)
        if chunk.sequence != 1:
            return data
        flipped = bytes(b ^ 0xFF for b in codec.decode_chunk_data(chunk.data, chunk.message_id))
        return codec.encode(ChunkFrame(chunk.message_id, chunk.sequence, codec.encode_chunk_data(flipped),
                                       chunk.sender))

    def test_corrupted_file_is_rejected(self):
        self.write_outgoing(self.alice, "data.bin", os.urandom(3000))
        self.alice.constants.CONTROL_ACK_TIMEOUT_SEC = 0.5
        self.start_both()

        result = self.alice.send_file("bob", "data.bin")

        self.assertEqual(result.failed_sequences, [], "Every chunk was written and acknowledged.")
        self.assertFalse(result.end_acknowledged)
        self.assertIn(NackFrame(result.file_id, "hash mismatch / corrupted", "bob"),
                      frames_sent(self.network, BOB, NackFrame))
        self.assertFalse(os.path.exists(os.path.join(self.bob.incoming_dir, "data.bin")))


class LossyNetworkTest(NodeTestCase):
    """One datagram in ten is lost, in either direction."""

    def setUp(self):
        self.drop = lossy(0.1, seed=7)
        super().setUp()

    def test_messages_arrive_exactly_once(self):
        received = []
        self.bob.add_message_listener(lambda frame, address: received.append(frame.text))
        self.start_both()

        entries = [self.alice.talk("bob", f"message {i}") for i in range(10)]
        for entry in entries:
            self.assertTrue(self.alice.tracker.wait_for_ack(entry, timeout=5))
        self.assertEqual(sorted(received), sorted(f"message {i}" for i in range(10)))

    def test_file_arrives_intact(self):
        contents = os.urandom(8000)
        self.write_outgoing(self.alice, "data.bin", contents)
        self.start_both()

        result = self.alice.send_file("bob", "data.bin")

        self.assertTrue(result.succeeded())
        with open(os.path.join(self.bob.incoming_dir, "data.bin"), "rb") as f:
            self.assertEqual(f.read(), contents)

class ConsoleTest(NodeTestCase):

    def setUp(self):
        super().setUp()
        self.lines = []
        self.console = CommandConsole(self.alice, output=self.lines.append)

    def test_devices(self):
        self.alice.registry.upsert("alice", *ALICE)
        self.alice.registry.upsert("bob", *BOB)
        self.console.handle_line("devices")
        text = "\n".join(self.lines)
        self.assertIn("alice (you)", text)
        self.assertIn("10.0.0.2", text)

    def test_unknown_command_lists_commands(self):
        self.console.handle_line("dance")
        text = "\n".join(self.lines)
        for command in ("devices", "talk", "sendfile", "help", "quit"):
            self.assertIn(command, text)

    def test_errors_do_not_escape(self):
        self.console.handle_line("talk carol hello")
        self.console.handle_line("sendfile carol nothing.txt")

    def test_talk_sends_message(self):
        self.alice.registry.upsert("bob", *BOB)
        self.console.handle_line("talk bob hello there")
        talks = frames_sent(self.network, ALICE, TalkFrame)
        self.assertEqual([t.text for t in talks], ["hello there"])

    def test_quit(self):
        self.console.running = True
        self.console.handle_line("exit")
        self.assertFalse(self.console.running)

    def test_incoming_message_is_printed(self):
        self.alice.server.handle_datagram(codec.encode(TalkFrame(1, "bob", "ping")), BOB)
        self.assertIn("[bob] ping", "\n".join(self.lines))


if __name__ == '__main__':
    unittest.main()
