import hashlib
import itertools
import logging
import os
import threading
from typing import Callable

from lanlink.errors import PeriodicTaskError

logger = logging.getLogger("__main__")


def file_hash(filename: str) -> str:
    """
    SHA-256 hex digest of a file's contents, read in blocks so large files
    never sit in memory whole.
    """
    sha256_hash = hashlib.sha256()
    with open(filename, 'rb') as file:
        while True:
            data = file.read(4096)  # Read data from the file in chunks
            if not data:
                break
            sha256_hash.update(data)
    return sha256_hash.hexdigest()


def make_sure_directory_exists(path: str) -> str:
    """
    Creates path (and its parents) if needed.
    :return: absolute version of path
    """
    if os.path.isabs(path):
        logger.debug(f"Path {path} is absolute.")
    else:
        path = os.path.join(os.getcwd(), path)
        logger.debug(f"Absolute version is {path}")
    if not os.path.exists(path):
        logger.debug(f"Creating directory {path}.")
        os.makedirs(path, exist_ok=True)
    return path


def is_valid_name(name: str) -> bool:
    """Peer names travel as a colon separated field, so they can't be empty or contain ':'."""
    return bool(name) and ":" not in name and not any(c.isspace() for c in name)


class MessageIdGenerator:
    """Thread-safe, monotonically increasing message ids, starting at 1."""

    def __init__(self, start: int = 1):
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            return next(self._counter)


class Timer:
    def __init__(self,
                 interval_sec: float,
                 function: Callable,
                 auto_reset: bool = False,
                 name: str = "Timer",
                 on_error: Callable[[PeriodicTaskError], None] | None = None,
                 *args, **kwargs):
        """
        Calls function every interval_sec on its own thread (once, unless auto_reset).

        Whatever function raises is wrapped in a PeriodicTaskError and handed to
        on_error (logged by default); the timer keeps running either way.
        """
        self.interval_sec: float = interval_sec
        self.function: Callable = function
        self.auto_reset: bool = auto_reset
        self.name = name
        self.on_error = on_error if on_error is not None else self._log_error
        self.args: tuple = args
        self.kwargs: dict = kwargs
        self.faults: int = 0
        self._stop_event = threading.Event()
        self.__thread = None

    @staticmethod
    def _log_error(error: PeriodicTaskError) -> None:
        logger.error(str(error))

    def run_once(self) -> None:
        try:
            self.function(*self.args, **self.kwargs)
        except Exception as e:
            self.faults += 1
            self.on_error(PeriodicTaskError(self.name, e))

    def run(self) -> None:
        logger.debug(f"Starting timer {self.name}.")

        while not self._stop_event.is_set():
            if self._stop_event.wait(self.interval_sec):
                break
            self.run_once()
            if not self.auto_reset:
                break

        logger.debug(f"Timer {self.name} stopped.")

    def reset(self) -> None:
        self.stop()
        self.start()

    def start(self) -> None:
        if self.__thread is None or not self.__thread.is_alive():
            self._stop_event.clear()
            self.__thread = threading.Thread(target=self.run, name=self.name, daemon=True)
            self.__thread.start()
        else:
            logger.info(f"Resetting timer {self.name}.")
            self.reset()

    def stop(self) -> None:
        if self._stop_event.is_set():
            logger.debug(f"Timer {self.name} already stopped.")
            return

        logger.debug(f"Stopping timer {self.name}.")
        self._stop_event.set()
        if self.__thread and self.__thread.is_alive() and self.__thread is not threading.current_thread():
            self.__thread.join()

    def stopped(self):
        return self._stop_event.is_set()
