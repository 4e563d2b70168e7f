import logging
import shlex
from typing import Callable

from lanlink.errors import OutgoingFileNotFoundError, PeerNotFoundError, UnacknowledgedControlError
from lanlink.frames import TalkFrame
from lanlink.node import Node

logger = logging.getLogger("__main__")


class CommandConsole:
    """
    Line based console driving a Node: every line is "<command> [arguments]".
    """

    def __init__(self, node: Node, title: str = "lanlink", output: Callable[[str], None] = print):
        self.node = node
        self.title = title
        self.output = output
        self.running = False
        self.__options: list[dict] = []

        self.add_option("devices", self.list_devices, description="List the active devices.")
        self.add_option("talk", self.talk, usage="talk <name> <message>",
                        description="Send a text message to a device.")
        self.add_option("sendfile", self.send_file, usage="sendfile <name> <file>",
                        description=f"Send a file from \"{node.outgoing_dir}\" to a device.")
        self.add_option("help", self.display, description="Show this list.")
        self.add_option("quit", self.quit, description="Leave the network.")
        self.add_option("exit", self.quit, description="Same as quit.")

        node.add_message_listener(self.on_message)

    def add_option(self, name: str, command: Callable, usage: str = "", description: str = "") -> None:
        """
        Adds a command; command is called with the rest of the line.
        """
        if self.find_option(name) is not None:
            raise ValueError(f"Option \"{name}\" is already in the option menu.")
        self.__options.append({"name": name, "command": command, "usage": usage or name,
                               "description": description})

    def find_option(self, name: str) -> dict | None:
        for option in self.__options:
            if option["name"] == name:
                return option
        return None

    def display(self, argument: str = "") -> None:
        self.output(f"\n-------- {self.title} ({self.node.name}) --------")
        for option in self.__options:
            self.output(f"  {option['usage']:<28} {option['description']}")

    def handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        name, _, argument = line.partition(" ")
        option = self.find_option(name.lower())
        if option is None:
            self.output(f"Unknown command \"{name}\".")
            self.display()
            return
        try:
            option["command"](argument.strip())
        except PeerNotFoundError as e:
            logger.error(f"{e} Use \"devices\" to see who is online.")
        except OutgoingFileNotFoundError as e:
            logger.error(str(e))
        except UnacknowledgedControlError as e:
            logger.error(f"Transfer aborted: {e}")

    def run(self, prompt: str = ">> ") -> None:
        self.running = True
        self.display()
        while self.running:
            try:
                line = input(prompt)
            except (EOFError, KeyboardInterrupt):
                break
            self.handle_line(line)

    # Commands

    def list_devices(self, argument: str = "") -> None:
        rows = self.node.devices()
        if not rows:
            self.output("No active devices.")
            return
        self.output(f"{'Name':<20} {'Address':<16} {'Port':<6} Last seen")
        for row in sorted(rows, key=lambda r: r.name):
            name = f"{row.name} (you)" if row.is_self else row.name
            self.output(f"{name:<20} {row.address:<16} {row.port:<6} {row.idle_sec:.1f}s ago")

    def talk(self, argument: str) -> None:
        peer_name, _, text = argument.partition(" ")
        if not peer_name or not text.strip():
            self.output("Usage: talk <name> <message>")
            return
        self.node.talk(peer_name, text.strip())

    def send_file(self, argument: str) -> None:
        try:
            parts = shlex.split(argument)
        except ValueError:
            parts = argument.split()
        if len(parts) != 2:
            self.output("Usage: sendfile <name> <file>")
            return
        peer_name, filename = parts
        result = self.node.send_file(peer_name, filename)
        if result.succeeded():
            self.output(f"{filename} delivered to {peer_name} ({result.chunk_count} chunks).")
        elif result.failed_sequences:
            self.output(f"{filename}: {len(result.failed_sequences)} chunk(s) were never acknowledged "
                        f"by {peer_name}, the file is probably corrupted on their side.")
        else:
            self.output(f"{filename} was sent, but {peer_name} never confirmed it.")

    def quit(self, argument: str = "") -> None:
        self.running = False

    def on_message(self, frame: TalkFrame, address: tuple[str, int]) -> None:
        self.output(f"\n[{frame.sender}] {frame.text}")
