"""
lanlink - messaging and file transfer between devices on the same LAN

Usage: lanlink <name> [--port 8080] [--incoming DIR] [--outgoing DIR] [-v]
"""
import sys

import ui_helpers
from cli import CommandConsole
from lanlink.errors import StartupError


def main(argv: list[str] | None = None) -> None:
    args = ui_helpers.handle_terminal(argv)
    logger = ui_helpers.create_logger(args.verbose)

    try:
        node = ui_helpers.initialise_node(args, logger=logger)
    except StartupError as e:
        logger.critical(f"Could not start: {e}")
        sys.exit(1)

    node.start()
    try:
        CommandConsole(node).run()
    finally:
        node.stop()
        logger.info("Bye.")


if __name__ == "__main__":
    main()
