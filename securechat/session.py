"""
Session management: the single direct connection between two peers.

A SessionManager owns at most one PeerSession. The server side accepts it,
the client side connects to the address learned through discovery. Once
the session closes, the manager stays closed.
"""
import enum
import logging
import socket
import threading
from typing import Optional, Tuple
from . import config
from .protocol import ChatMessage, DecodeError, decode, encode, recv_frame, send_frame

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    IDLE = 'idle'
    CONNECTING = 'connecting'
    ESTABLISHED = 'established'
    CLOSED = 'closed'


class SessionObserver:
    """Receives session events. Callbacks run on network threads."""

    def on_established(self, session: "PeerSession") -> None:
        pass

    def on_message(self, session: "PeerSession", text: str) -> None:
        pass

    def on_closed(self, session: "PeerSession", reason: str) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass


class PeerSession:
    def __init__(self, sock: socket.socket, remote_address: str, remote_port: int, key: bytes):
        self.socket = sock
        self.remote_address = remote_address
        self.remote_port = remote_port
        self.key = key
        self.alive = True
        self._send_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"PeerSession({self.remote_address}:{self.remote_port}, alive={self.alive})"

    def send(self, text: str) -> None:
        """Encrypt and send one chat message."""
        frame = encode(ChatMessage(text=text), self.key)
        with self._send_lock:
            send_frame(self.socket, frame)

    def receive(self) -> Optional[str]:
        """Block for the next chat message. Returns None when the peer closed."""
        while True:
            frame = recv_frame(self.socket)
            if frame is None:
                return None
            message = decode(frame, self.key)
            if isinstance(message, ChatMessage):
                return message.text
            logger.warning(f"Ignoring unexpected {message.type} on session")

    def close(self) -> None:
        self.alive = False
        try:
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Already disconnected
            pass
        try:
            self.socket.close()
        except OSError as e:
            logger.error(f"Session socket cleanup error: {e}")


class SessionManager:
    def __init__(self, key: bytes, observer: Optional[SessionObserver] = None,
                 connect_timeout: float = config.CONNECT_TIMEOUT):
        self.key = key
        self.observer = observer or SessionObserver()
        self.connect_timeout = connect_timeout
        self._state = SessionState.IDLE
        self._session: Optional[PeerSession] = None
        self._cond = threading.Condition()
        self.listen_socket: Optional[socket.socket] = None
        self.accept_thread: Optional[threading.Thread] = None
        self.receive_thread: Optional[threading.Thread] = None
        self.running = False

    @property
    def state(self) -> SessionState:
        with self._cond:
            return self._state

    @property
    def session(self) -> Optional[PeerSession]:
        with self._cond:
            return self._session

    @property
    def is_active(self) -> bool:
        with self._cond:
            return self._session is not None and self._session.alive

    def listen(self, host: str = config.DEFAULT_HOST, port: int = 0) -> int:
        """Start accepting the inbound session. Returns the bound TCP port.

        Raises OSError if the listener cannot be bound.
        """
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            sock.listen(1)
        except OSError:
            sock.close()
            raise
        sock.settimeout(config.SOCKET_POLL_INTERVAL)
        self.listen_socket = sock
        self.running = True
        bound_port = sock.getsockname()[1]
        logger.info(f"Listening for TCP connections on {host}:{bound_port}")

        self.accept_thread = threading.Thread(target=self._accept_loop, name="session-accept")
        self.accept_thread.daemon = True
        self.accept_thread.start()
        return bound_port

    def _accept_loop(self) -> None:
        while self.running:
            try:
                conn, address = self.listen_socket.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self.running:
                    logger.error(f"Accept error: {e}")
                break
            conn.settimeout(None)
            logger.info(f"New connection from {address}")
            self._establish(conn, address, expected=SessionState.IDLE)

    def connect(self, host: str, port: int) -> bool:
        """Open the outbound session. Returns False if it was not established."""
        with self._cond:
            if self._state is not SessionState.IDLE or self._session is not None:
                logger.warning(f"Ignoring connect to {host}:{port} in state {self._state.value}")
                return False
            self._state = SessionState.CONNECTING

        logger.info(f"Connecting to {host}:{port}")
        try:
            sock = socket.create_connection((host, port), timeout=self.connect_timeout)
            sock.settimeout(None)
        except OSError as e:
            logger.error(f"Connection error: {e}")
            with self._cond:
                if self._state is SessionState.CONNECTING:
                    self._state = SessionState.IDLE
                self._cond.notify_all()
            self.observer.on_error(f"Failed to connect: {e}")
            return False
        return self._establish(sock, sock.getpeername(), expected=SessionState.CONNECTING)

    def _establish(self, sock: socket.socket, address: Tuple[str, int],
                   expected: SessionState) -> bool:
        with self._cond:
            if self._state is not expected or self._session is not None:
                logger.warning(f"Rejecting connection from {address}: session already "
                               f"{self._state.value}")
                session = None
            else:
                session = PeerSession(sock, address[0], address[1], self.key)
                self._session = session
                self._state = SessionState.ESTABLISHED
                self._cond.notify_all()

        if session is None:
            sock.close()
            return False

        logger.info(f"Session established with {address[0]}:{address[1]}")
        self.receive_thread = threading.Thread(
            target=self._receive_loop, args=(session,), name="session-receive"
        )
        self.receive_thread.daemon = True
        self.receive_thread.start()
        self.observer.on_established(session)
        return True

    def _receive_loop(self, session: PeerSession) -> None:
        reason = "Peer has disconnected"
        try:
            while session.alive:
                try:
                    text = session.receive()
                except DecodeError as e:
                    logger.error(f"Invalid frame from peer: {e}")
                    reason = f"Received an invalid message: {e}"
                    break
                except OSError as e:
                    if session.alive:
                        logger.error(f"Message receive error: {e}")
                    break
                if text is None:
                    if session.alive:
                        logger.info("Connection closed by peer")
                    break
                logger.debug(f"Received message: {text}")
                self.observer.on_message(session, text)
        except Exception as e:
            logger.exception(f"Receive loop failed: {e}")
            reason = f"Session error: {e}"
        finally:
            self.close(reason)

    def send(self, text: str) -> bool:
        """Send a chat message.

        A message too large for one frame is refused and reported; the
        session stays up. Any transport failure ends the session.
        """
        session = self.session
        if session is None or not session.alive:
            return False
        try:
            session.send(text)
        except ValueError as e:
            logger.warning(f"Refusing to send message: {e}")
            self.observer.on_error(f"Message not sent, it is too long ({len(text)} characters).")
            return False
        except OSError as e:
            logger.error(f"Message send error: {e}")
            self.close(f"Error sending message: Peer may have disconnected. {e}")
            return False
        logger.debug(f"Sent message: {text}")
        return True

    def close(self, reason: str = "Session closed") -> None:
        """End the session, if any. Safe to call more than once."""
        with self._cond:
            session = self._session
            self._session = None
            self._state = SessionState.CLOSED
            self._cond.notify_all()

        if session is None:
            return
        session.close()
        logger.info(f"Session with {session.remote_address}:{session.remote_port} closed: {reason}")
        self.observer.on_closed(session, reason)

    def wait_for_session(self, timeout: Optional[float] = None) -> Optional[PeerSession]:
        """Block until a session is established or the manager is closed."""
        with self._cond:
            self._cond.wait_for(
                lambda: self._session is not None or self._state is SessionState.CLOSED,
                timeout,
            )
            return self._session

    def wait_until_closed(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._state is SessionState.CLOSED, timeout)

    def shutdown(self) -> None:
        """Close the session and stop accepting connections."""
        self.running = False
        self.close("Shutting down")
        if self.accept_thread and self.accept_thread is not threading.current_thread():
            self.accept_thread.join(timeout=2 * config.SOCKET_POLL_INTERVAL)
        if self.listen_socket:
            try:
                self.listen_socket.close()
            except OSError as e:
                logger.error(f"Listener cleanup error: {e}")
            self.listen_socket = None
