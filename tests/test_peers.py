import unittest

from lanlink.constants import Constants
from lanlink.errors import PeerNotFoundError
from lanlink.peers import PeerRegistry


class PeerRegistryTest(unittest.TestCase):

    def setUp(self):
        self.registry = PeerRegistry(Constants(), clock=lambda: 0.0)

    def test_upsert_reports_new_peers_once(self):
        self.assertTrue(self.registry.upsert("alice", "10.0.0.1", 8080, now=0.0))
        self.assertFalse(self.registry.upsert("alice", "10.0.0.1", 8080, now=1.0))
        self.assertEqual(len(self.registry), 1)
        self.assertIn("alice", self.registry)

    def test_upsert_rebinds_address(self):
        self.registry.upsert("alice", "10.0.0.1", 8080, now=0.0)
        self.registry.upsert("alice", "10.0.0.9", 9090, now=2.0)
        record = self.registry.require("alice")
        self.assertEqual(record.endpoint(), ("10.0.0.9", 9090))
        self.assertEqual(record.last_seen, 2.0)

    def test_last_seen_never_moves_backwards(self):
        self.registry.upsert("alice", "10.0.0.1", 8080, now=5.0)
        self.registry.upsert("alice", "10.0.0.1", 8080, now=3.0)
        self.assertEqual(self.registry.require("alice").last_seen, 5.0)

    def test_require_unknown_peer(self):
        self.assertIsNone(self.registry.lookup("bob"))
        with self.assertRaises(PeerNotFoundError):
            self.registry.require("bob")

    def test_reaper_evicts_silent_peer_exactly_once(self):
        disconnected = []
        self.registry.add_disconnect_listener(disconnected.append)
        self.registry.upsert("alice", "10.0.0.1", 8080, now=0.0)
        self.registry.upsert("bob", "10.0.0.2", 8080, now=6.0)

        self.assertEqual(self.registry.reap_expired(now=10.0), [],
                         "A peer idle for exactly the inactivity limit is kept.")

        removed = self.registry.reap_expired(now=10.5)
        self.assertEqual([r.name for r in removed], ["alice"])
        self.assertEqual(self.registry.reap_expired(now=11.0), [])
        self.assertEqual([r.name for r in disconnected], ["alice"])
        self.assertNotIn("alice", self.registry)
        self.assertIn("bob", self.registry)

    def test_snapshot_can_be_iterated_again(self):
        self.registry.upsert("alice", "10.0.0.1", 8080, now=1.0)
        snapshot = self.registry.snapshot(now=4.0)
        first = [(record.name, idle) for record, idle in snapshot]
        self.registry.upsert("bob", "10.0.0.2", 8080, now=4.0)
        second = sorted((record.name, idle) for record, idle in snapshot)

        self.assertEqual(first, [("alice", 3.0)])
        self.assertEqual(second, [("alice", 3.0), ("bob", 0.0)])


if __name__ == '__main__':
    unittest.main()
