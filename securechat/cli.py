"""
Command-line interface for the secure LAN chat application.
"""
import sys
import logging
import argparse
import threading
from typing import Callable, Optional, TextIO
from . import config
from .crypto import derive_key
from .discovery import DiscoveryRequester, DiscoveryResponder, generate_server_id, validate_server_id
from .session import PeerSession, SessionManager, SessionObserver

logger = logging.getLogger(__name__)

LOCAL_EXIT_REASON = "You have left the chat"

# ANSI color codes
class Colors:
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    ENDC = '\033[0m'
    CLEAR_LINE = '\033[K'


class ConsoleOutput:
    """Serializes console writes so network messages don't garble the input line."""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream or sys.stdout
        self.display_lock = threading.Lock()
        self.is_tty = hasattr(self.stream, 'isatty') and self.stream.isatty()
        self.awaiting_input = False

    def _paint(self, text: str, color: Optional[str]) -> str:
        if color and self.is_tty:
            return f"{color}{text}{Colors.ENDC}"
        return text

    def write(self, text: str) -> None:
        with self.display_lock:
            self.stream.write(text)
            self.stream.flush()

    def write_status(self, message: str, color: Optional[str] = None) -> None:
        """Print a line, redrawing the prompt if the user is mid-input."""
        with self.display_lock:
            if self.awaiting_input:
                # Wipe the prompt, print above it, then put it back
                if self.is_tty:
                    self.stream.write(f"\r{Colors.CLEAR_LINE}")
                else:
                    self.stream.write("\n")
            self.stream.write(f"{self._paint(message, color)}\n")
            if self.awaiting_input:
                self.stream.write(self._paint(config.PROMPT, Colors.GREEN))
            self.stream.flush()

    def show_prompt(self) -> None:
        with self.display_lock:
            self.stream.write(self._paint(config.PROMPT, Colors.GREEN))
            self.stream.flush()
            self.awaiting_input = True

    def line_entered(self) -> None:
        with self.display_lock:
            self.awaiting_input = False


class ChatCLI(SessionObserver):
    def __init__(self, passphrase: str = config.SHARED_PASSPHRASE,
                 input_func: Optional[Callable[[], str]] = None,
                 output: Optional[ConsoleOutput] = None,
                 host: str = config.DEFAULT_HOST,
                 discovery_port: int = config.DISCOVERY_PORT,
                 broadcast_address: str = config.BROADCAST_ADDRESS,
                 discovery_timeout: float = config.DISCOVERY_TIMEOUT):
        self.key = derive_key(passphrase)
        self.input_func = input_func or input
        self.output = output or ConsoleOutput()
        self.host = host
        self.discovery_port = discovery_port
        self.broadcast_address = broadcast_address
        self.discovery_timeout = discovery_timeout
        self.manager = SessionManager(self.key, observer=self)
        self.responder: Optional[DiscoveryResponder] = None

    def ask(self, question: str) -> str:
        self.output.write(question)
        return self.input_func()

    # Session events

    def on_established(self, session: PeerSession) -> None:
        self.output.write_status(
            f"Connection established with {session.remote_address}! "
            f"You can now chat. Type '{config.EXIT_COMMAND}' to quit.",
            Colors.YELLOW,
        )

    def on_message(self, session: PeerSession, text: str) -> None:
        self.output.write_status(f"[Peer]: {text}", Colors.CYAN)

    def on_closed(self, session: PeerSession, reason: str) -> None:
        self.output.write_status(f"{reason}. The chat session has ended.", Colors.YELLOW)

    def on_error(self, message: str) -> None:
        self.output.write_status(message, Colors.RED)

    # Flows

    def chat_loop(self) -> None:
        """Relay console lines to the peer until the session ends."""
        if self.manager.wait_for_session() is None:
            return
        try:
            while self.manager.is_active:
                self.output.show_prompt()
                try:
                    line = self.input_func()
                except EOFError:
                    break
                finally:
                    self.output.line_entered()

                if not self.manager.is_active:
                    break
                if not line or not line.strip():
                    continue
                if line.strip().lower() == config.EXIT_COMMAND:
                    break
                self.manager.send(line)
        finally:
            self.manager.close(LOCAL_EXIT_REASON)

    def run_server(self, server_id: Optional[str] = None) -> bool:
        server_id = server_id or generate_server_id()
        self.output.write_status(f"Your Server ID is: {server_id}")
        self.output.write_status("Share this ID with the client. Waiting for a connection...")

        try:
            tcp_port = self.manager.listen(self.host)
        except OSError as e:
            logger.error(f"Server error: {e}")
            self.output.write_status(
                f"FATAL ERROR: Could not start TCP listener ({e}). The application cannot continue.",
                Colors.RED,
            )
            return False
        self.output.write_status(f"Server listening for TCP connections on port: {tcp_port}")

        self.responder = DiscoveryResponder(server_id, tcp_port, self.key,
                                            host=self.host, port=self.discovery_port)
        try:
            self.responder.start()
        except OSError as e:
            logger.error(f"Discovery error: {e}")
            self.output.write_status(
                f"FATAL ERROR: Could not listen for discovery on port {self.discovery_port} ({e}). "
                "The application cannot continue.",
                Colors.RED,
            )
            return False

        self.output.write_status("Server is running and discoverable on the local network.")
        self.chat_loop()
        return True

    def run_client(self) -> bool:
        target_id = (self.ask("Enter the 5-digit Server ID to connect to: ") or "").strip()
        if not validate_server_id(target_id):
            self.output.write_status("Invalid Server ID format. Exiting.", Colors.RED)
            return False
        self.output.write_status(f"Searching for server with ID: {target_id}...")

        requester = DiscoveryRequester(self.key, self.broadcast_address, self.discovery_port)
        try:
            match = requester.search(target_id, self.discovery_timeout)
        except OSError as e:
            logger.error(f"Discovery error: {e}")
            self.output.write_status(f"Discovery failed: {e}", Colors.RED)
            return False

        if match is None:
            self.output.write_status(
                f"Could not find server with ID {target_id} within {self.discovery_timeout} seconds.",
                Colors.RED,
            )
            return False

        self.output.write_status(
            f"Found server with ID {match.server_id}. Establishing secure connection..."
        )
        if not self.manager.connect(match.address, match.port):
            return False
        self.chat_loop()
        return True

    def run(self) -> bool:
        self.output.write_status("Welcome to Secure Chat!")
        self.output.write_status("-----------------------")
        choice = (self.ask("Start as (S)erver or (C)lient? ") or "").strip().lower()
        if choice in ('s', 'server'):
            return self.run_server()
        if choice in ('c', 'client'):
            return self.run_client()
        self.output.write_status("Invalid choice. Exiting.")
        return False

    def shutdown(self) -> None:
        """Stop every listener and close the session."""
        if self.responder:
            self.responder.stop()
            self.responder = None
        self.manager.shutdown()


def main(argv=None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(description="Secure LAN Chat")
    parser.add_argument("--timeout", type=float, default=config.DISCOVERY_TIMEOUT,
                        help="Seconds to wait for the server to answer discovery")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    cli = None
    ok = False
    try:
        cli = ChatCLI(discovery_timeout=args.timeout)
        ok = cli.run()
    except KeyboardInterrupt:
        print("\nEnding chat...")
    except Exception as e:
        logger.exception(f"Application error: {e}")
        print(f"An unexpected error occurred: {e}")
    finally:
        if cli:
            cli.shutdown()
        print("Application has shut down.")
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
