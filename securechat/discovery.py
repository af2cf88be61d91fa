"""
LAN discovery: map a short server ID to a reachable address and TCP port.

A server runs a DiscoveryResponder on the well-known discovery port. A
client broadcasts a single DiscoveryRequest with a DiscoveryRequester and
waits for the response carrying the ID it was given.
"""
import logging
import secrets
import socket
import threading
import time
from dataclasses import dataclass
from typing import Optional, Tuple
from . import config
from .protocol import DecodeError, DiscoveryRequest, DiscoveryResponse, decode, encode

logger = logging.getLogger(__name__)


def generate_server_id() -> str:
    """Return a random 5-digit server ID."""
    span = config.SERVER_ID_MAX - config.SERVER_ID_MIN + 1
    return str(config.SERVER_ID_MIN + secrets.randbelow(span))


def validate_server_id(server_id: Optional[str]) -> bool:
    """Check that user input looks like a server ID."""
    if not server_id:
        return False
    return len(server_id) == 5 and server_id.isdigit()


@dataclass(frozen=True)
class DiscoveryMatch:
    server_id: str
    address: str
    port: int


class DiscoveryResponder:
    """Answers discovery broadcasts with this server's ID and TCP port."""

    def __init__(self, server_id: str, tcp_port: int, key: bytes,
                 host: str = config.DEFAULT_HOST,
                 port: int = config.DISCOVERY_PORT):
        self.server_id = server_id
        self.tcp_port = tcp_port
        self.key = key
        self.host = host
        self.port = port
        self.socket: Optional[socket.socket] = None
        self.running = False
        self.listen_thread: Optional[threading.Thread] = None
        # Built once; the listener never touches chat state to answer.
        self._response = encode(
            DiscoveryResponse(server_id=server_id, tcp_port=tcp_port), key
        )

    def start(self) -> None:
        """Bind the discovery port and start answering requests."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind((self.host, self.port))
        except OSError:
            sock.close()
            raise
        sock.settimeout(config.SOCKET_POLL_INTERVAL)
        self.socket = sock
        self.port = sock.getsockname()[1]
        self.running = True

        self.listen_thread = threading.Thread(target=self._listen, name="discovery-responder")
        self.listen_thread.daemon = True
        self.listen_thread.start()
        logger.info(f"Discovery responder listening on {self.host}:{self.port}")

    def _listen(self) -> None:
        while self.running:
            try:
                data, addr = self.socket.recvfrom(config.BUFFER_SIZE)
            except socket.timeout:
                continue
            except OSError as e:
                if self.running:
                    logger.error(f"Discovery socket error: {e}")
                break
            self.handle_datagram(data, addr)

    def handle_datagram(self, data: bytes, addr: Tuple[str, int]) -> bool:
        """Reply to a valid discovery request. Returns True if a reply was sent."""
        try:
            message = decode(data, self.key)
        except DecodeError as e:
            logger.debug(f"Ignoring invalid discovery packet from {addr}: {e}")
            return False
        if not isinstance(message, DiscoveryRequest):
            logger.debug(f"Ignoring {message.type} on discovery port from {addr}")
            return False

        try:
            self.socket.sendto(self._response, addr)
        except OSError as e:
            logger.warning(f"Failed to answer discovery request from {addr}: {e}")
            return False
        logger.debug(f"Answered discovery request from {addr}")
        return True

    def stop(self) -> None:
        self.running = False
        if self.listen_thread and self.listen_thread is not threading.current_thread():
            self.listen_thread.join(timeout=2 * config.SOCKET_POLL_INTERVAL)
        if self.socket:
            try:
                self.socket.close()
            except OSError as e:
                logger.error(f"Discovery socket cleanup error: {e}")
            self.socket = None
        logger.info("Discovery responder stopped")


class DiscoveryRequester:
    """Broadcasts one discovery request and picks out the target's response."""

    def __init__(self, key: bytes,
                 broadcast_address: str = config.BROADCAST_ADDRESS,
                 discovery_port: int = config.DISCOVERY_PORT):
        self.key = key
        self.broadcast_address = broadcast_address
        self.discovery_port = discovery_port
        self.socket: Optional[socket.socket] = None
        self.match: Optional[DiscoveryMatch] = None
        self._lock = threading.Lock()

    @property
    def port(self) -> int:
        if not self.socket:
            raise ValueError("Requester socket is not open")
        return self.socket.getsockname()[1]

    def open(self) -> None:
        """Bind an ephemeral port to receive responses on."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind(('', 0))
        except OSError:
            sock.close()
            raise
        self.socket = sock

    def broadcast(self) -> None:
        payload = encode(DiscoveryRequest(), self.key)
        self.socket.sendto(payload, (self.broadcast_address, self.discovery_port))
        logger.info(f"Sent discovery request to {self.broadcast_address}:{self.discovery_port}")

    def handle_datagram(self, data: bytes, addr: Tuple[str, int],
                        target_id: str) -> Optional[DiscoveryMatch]:
        """Return a match for the first response from target_id, else None."""
        try:
            message = decode(data, self.key)
        except DecodeError as e:
            logger.debug(f"Ignoring invalid discovery packet from {addr}: {e}")
            return None
        if not isinstance(message, DiscoveryResponse):
            return None
        if message.server_id != target_id:
            logger.debug(f"Ignoring response from server {message.server_id} at {addr[0]}")
            return None

        with self._lock:
            if self.match is not None:
                logger.debug(f"Ignoring duplicate response from server {message.server_id}")
                return None
            self.match = DiscoveryMatch(message.server_id, addr[0], message.tcp_port)
            return self.match

    def wait_for_match(self, target_id: str,
                       timeout: float = config.DISCOVERY_TIMEOUT) -> Optional[DiscoveryMatch]:
        """Read responses until one matches target_id or the timeout expires."""
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            self.socket.settimeout(remaining)
            try:
                data, addr = self.socket.recvfrom(config.BUFFER_SIZE)
            except socket.timeout:
                return None
            match = self.handle_datagram(data, addr, target_id)
            if match is not None:
                return match

    def close(self) -> None:
        if self.socket:
            self.socket.close()
            self.socket = None

    def search(self, target_id: str,
               timeout: float = config.DISCOVERY_TIMEOUT) -> Optional[DiscoveryMatch]:
        """Find the server with target_id. Returns None if nothing answered in time."""
        self.open()
        try:
            self.broadcast()
            match = self.wait_for_match(target_id, timeout)
        finally:
            self.close()
        if match is None:
            logger.info(f"No server with ID {target_id} answered within {timeout} seconds")
        else:
            logger.info(f"Found server {match.server_id} at {match.address}:{match.port}")
        return match
