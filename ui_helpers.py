import argparse
import logging
from sys import stdout

from lanlink.constants import Constants
from lanlink.errors import InvalidNameError
from lanlink.helpers import is_valid_name, make_sure_directory_exists
from lanlink.node import Node
from lanlink.transports import UDPTransport

LOG_FILE = "lanlink.log"
LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(message)s"


def handle_terminal(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="lanlink",
                                     description="Messaging and file transfer between devices on the same LAN.")
    parser.add_argument("name", help="Name other devices will see us as (no spaces or ':').")
    parser.add_argument("--port", type=int, required=False, default=Constants.PORT,
                        help="UDP port every device on the network uses.")
    parser.add_argument("--broadcast", required=False, default=Constants.BROADCAST_ADDRESS,
                        help="Address heartbeats are broadcast to.")
    parser.add_argument("--incoming", required=False, default=Constants.INCOMING_DIR,
                        help="Directory received files are saved to.")
    parser.add_argument("--outgoing", required=False, default=Constants.OUTGOING_DIR,
                        help="Directory files are sent from.")
    parser.add_argument("--no-progress", action="store_true", required=False, default=False,
                        help="Don't show a progress bar while sending files.")
    parser.add_argument("--verbose", "-v", action="store_true", required=False, default=False,
                        help="If logs should be verbose.")

    return parser.parse_args(argv)


def create_logger(verbose: bool) -> logging.Logger:
    logger = logging.getLogger("__main__")
    level = logging.DEBUG if verbose else logging.INFO
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S")

    # clear the log file
    file_handler = logging.FileHandler(LOG_FILE, mode="w")
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)

    handler = logging.StreamHandler(stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)

    logger.setLevel(level)
    logger.addHandler(file_handler)
    logger.addHandler(handler)

    return logger


def initialise_node(args: argparse.Namespace, logger: logging.Logger | None = None) -> Node:
    """
    Builds a Node bound to the UDP port from the parsed arguments. The node isn't started.
    :raises StartupError: invalid name, or the port can't be bound.
    """
    if not is_valid_name(args.name):
        raise InvalidNameError(f"Invalid device name {args.name!r}: it must be non-empty, without spaces or ':'.")

    constants = Constants()
    constants.PORT = args.port
    constants.BROADCAST_ADDRESS = args.broadcast
    constants.INCOMING_DIR = args.incoming
    constants.OUTGOING_DIR = args.outgoing
    constants.SHOW_PROGRESS = not args.no_progress

    incoming = make_sure_directory_exists(args.incoming)
    outgoing = make_sure_directory_exists(args.outgoing)
    if logger:
        logger.info(f"Receiving files into {incoming}, sending files from {outgoing}.")

    transport = UDPTransport(port=constants.PORT, broadcast_address=constants.BROADCAST_ADDRESS,
                             buffer_size=constants.BUFFER_SIZE)
    return Node(args.name, transport, incoming_dir=incoming, outgoing_dir=outgoing, constants=constants)
