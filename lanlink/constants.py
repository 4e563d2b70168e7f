from dataclasses import dataclass


@dataclass
class Constants:
    PORT = 8080
    BROADCAST_ADDRESS = "255.255.255.255"
    BUFFER_SIZE = 4096  # largest datagram we read
    ENCODING = "utf-8"

    CHUNK_SIZE = 1024  # bytes of file data per CHUNK frame
    NO_SEQUENCE = -1  # sequence used by every frame that is not a chunk

    HEARTBEAT_INTERVAL_SEC = 5
    PEER_INACTIVITY_SEC = 10
    PEER_REAP_INTERVAL_SEC = 1

    DEDUP_TTL_SEC = 5 * 60

    MAX_ATTEMPTS = 5
    RETRANSMIT_AFTER_SEC = 1
    DELIVERY_MONITOR_INTERVAL_SEC = 5

    CONTROL_ACK_TIMEOUT_SEC = 3.5  # FILE and END headers
    CHUNK_PACING_SEC = 0.05
    RECEIVE_TIMEOUT_SEC = 0.5  # lets the receive loop notice a shutdown

    INCOMING_DIR = "arquivos_recebidos"
    OUTGOING_DIR = "arquivos"
    TEMP_FILENAME = "temp_{file_id}.part"
    SHOW_PROGRESS = True

    def settle_timeout_sec(self) -> float:
        """
        Upper bound on how long every chunk of a transfer can stay pending: each one is
        either acked or dropped after MAX_ATTEMPTS retransmissions, and consecutive
        retransmissions are at most RETRANSMIT_AFTER_SEC plus one monitor interval apart.
        """
        per_attempt = self.RETRANSMIT_AFTER_SEC + self.DELIVERY_MONITOR_INTERVAL_SEC
        return 2 * (self.MAX_ATTEMPTS + 1) * per_attempt
