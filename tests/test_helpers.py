import hashlib
import os
import tempfile
import threading
import unittest

from lanlink.errors import PeriodicTaskError
from lanlink.helpers import MessageIdGenerator, Timer, file_hash, is_valid_name, make_sure_directory_exists


class HelpersTest(unittest.TestCase):

    def test_file_hash(self):
        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, "data.bin")
            contents = os.urandom(10000)
            with open(path, "wb") as f:
                f.write(contents)
            self.assertEqual(file_hash(path), hashlib.sha256(contents).hexdigest())

    def test_make_sure_directory_exists(self):
        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, "a", "b")
            self.assertEqual(make_sure_directory_exists(path), path)
            self.assertTrue(os.path.isdir(path))
            make_sure_directory_exists(path)

    def test_valid_names(self):
        self.assertTrue(is_valid_name("alice"))
        self.assertTrue(is_valid_name("pc-02"))
        for name in ("", "a:b", "two words", "tab\tname"):
            with self.subTest(name=name):
                self.assertFalse(is_valid_name(name))

    def test_message_ids_increase(self):
        ids = MessageIdGenerator()
        self.assertEqual([ids.next_id() for _ in range(3)], [1, 2, 3])
        self.assertEqual(MessageIdGenerator(start=7).next_id(), 7)


class TimerTest(unittest.TestCase):

    def test_faults_are_reported_and_timer_keeps_running(self):
        calls = []
        errors = []
        enough = threading.Event()

        def flaky():
            calls.append(1)
            if len(calls) >= 4:
                enough.set()
            raise RuntimeError("boom")

        timer = Timer(0.01, flaky, auto_reset=True, name="flaky", on_error=errors.append)
        timer.start()
        try:
            self.assertTrue(enough.wait(5), "Timer should keep calling after a fault.")
        finally:
            timer.stop()

        self.assertGreaterEqual(timer.faults, 3)
        self.assertIsInstance(errors[0], PeriodicTaskError)
        self.assertEqual(errors[0].task_name, "flaky")
        self.assertIsInstance(errors[0].cause, RuntimeError)
        self.assertTrue(timer.stopped())

    def test_single_shot(self):
        fired = threading.Event()
        timer = Timer(0.01, fired.set)
        timer.start()
        self.assertTrue(fired.wait(5))
        timer.stop()


if __name__ == '__main__':
    unittest.main()
