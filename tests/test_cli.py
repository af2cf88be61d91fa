import io
import queue
import threading
import time
import pytest
from securechat import cli as cli_module, config
from securechat.cli import ChatCLI, ConsoleOutput, LOCAL_EXIT_REASON
from securechat.discovery import DiscoveryResponder
from securechat.session import SessionManager, SessionState
from conftest import RecordingObserver, TEST_PASSPHRASE


class ScriptedInput:
    """Feeds lines to ChatCLI; blocks when the script is empty."""

    def __init__(self, *lines):
        self.lines = queue.Queue()
        for line in lines:
            self.lines.put(line)

    def feed(self, line):
        self.lines.put(line)

    def __call__(self):
        line = self.lines.get(timeout=10)
        if isinstance(line, BaseException):
            raise line
        if callable(line):
            return line()
        return line


def make_cli(*lines, **kwargs):
    output = ConsoleOutput(io.StringIO())
    chat = ChatCLI(passphrase=TEST_PASSPHRASE, input_func=ScriptedInput(*lines),
                   output=output, host="127.0.0.1", **kwargs)
    return chat, output.stream


def test_console_output_redraws_prompt_while_typing():
    stream = io.StringIO()
    output = ConsoleOutput(stream)
    output.write_status("before")
    output.show_prompt()
    output.write_status("[Peer]: hello")
    output.line_entered()
    output.write_status("after")
    assert stream.getvalue() == "before\nYou: \n[Peer]: hello\nYou: after\n"


def test_invalid_server_id_aborts_client():
    chat, out = make_cli("12ab")
    try:
        assert chat.run_client() is False
    finally:
        chat.shutdown()
    assert "Invalid Server ID format. Exiting." in out.getvalue()
    assert chat.manager.state is SessionState.CLOSED


def test_invalid_role_choice():
    chat, out = make_cli("x")
    try:
        assert chat.run() is False
    finally:
        chat.shutdown()
    assert "Invalid choice. Exiting." in out.getvalue()


def test_client_reports_not_found_without_connecting(key):
    responder = DiscoveryResponder("48213", 52011, key, host="127.0.0.1", port=0)
    responder.start()
    chat, out = make_cli("00000", discovery_port=responder.port,
                         broadcast_address="127.0.0.1", discovery_timeout=0.5)
    try:
        assert chat.run_client() is False
        assert chat.manager.state is SessionState.IDLE
        assert chat.manager.session is None
    finally:
        chat.shutdown()
        responder.stop()
    assert "Could not find server with ID 00000 within 0.5 seconds." in out.getvalue()


def test_server_and_client_chat_end_to_end():
    server, server_out = make_cli(discovery_port=0)
    server_input = server.input_func
    server_thread = threading.Thread(target=server.run_server, args=("48213",))
    server_thread.start()
    try:
        for _ in range(100):
            if server.responder is not None and server.responder.running:
                break
            time.sleep(0.05)
        discovery_port = server.responder.port

        client, client_out = make_cli("48213", "hello", "/EXIT", discovery_port=discovery_port,
                                      broadcast_address="127.0.0.1", discovery_timeout=5)
        assert client.run_client() is True
        assert client.manager.state is SessionState.CLOSED

        assert server.manager.wait_until_closed(5)
        server_input.feed("")
        server_thread.join(5)
        assert not server_thread.is_alive()
    finally:
        server_input.feed(EOFError())
        server.shutdown()
        server_thread.join(5)

    server_text = server_out.getvalue()
    assert "Your Server ID is: 48213" in server_text
    assert "[Peer]: hello" in server_text
    assert "Peer has disconnected" in server_text
    client_text = client_out.getvalue()
    assert "Found server with ID 48213" in client_text
    assert LOCAL_EXIT_REASON in client_text


def test_chat_loop_stops_on_remote_close_without_sending(session_pair_cli):
    chat, peer, peer_obs = session_pair_cli

    def peer_leaves():
        peer.close("gone")
        assert chat.manager.wait_until_closed(5)
        return "late message"

    chat.input_func.feed(peer_leaves)
    chat.chat_loop()

    assert chat.manager.state is SessionState.CLOSED
    assert peer_obs.messages == []


def test_chat_loop_ignores_blank_lines_and_exits_on_command(session_pair_cli):
    chat, peer, peer_obs = session_pair_cli
    for line in ("", "   ", "first", "/Exit"):
        chat.input_func.feed(line)
    chat.chat_loop()

    assert peer.wait_until_closed(5)
    assert peer_obs.messages == ["first"]


def test_chat_loop_exits_on_eof(session_pair_cli):
    chat, peer, _ = session_pair_cli
    chat.input_func.feed(EOFError())
    chat.chat_loop()
    assert chat.manager.state is SessionState.CLOSED
    assert peer.wait_until_closed(5)


@pytest.fixture
def session_pair_cli(key):
    chat, _ = make_cli()
    peer_obs = RecordingObserver()
    peer = SessionManager(key, observer=peer_obs)
    port = chat.manager.listen("127.0.0.1")
    assert peer.connect("127.0.0.1", port)
    assert chat.manager.wait_for_session(5) is not None
    yield chat, peer, peer_obs
    peer.shutdown()
    chat.shutdown()


def test_main_handles_invalid_choice(monkeypatch, capsys):
    monkeypatch.setattr("builtins.input", lambda *args: "q")
    assert cli_module.main([]) == 1
    out = capsys.readouterr().out
    assert "Invalid choice. Exiting." in out
    assert "Application has shut down." in out


def test_main_reports_unexpected_errors(monkeypatch, capsys):
    def boom(self):
        raise RuntimeError("kaboom")

    monkeypatch.setattr(ChatCLI, "run", boom)
    assert cli_module.main(["--timeout", "1"]) == 1
    out = capsys.readouterr().out
    assert "An unexpected error occurred: kaboom" in out
    assert "Application has shut down." in out


def test_chat_loop_keeps_going_after_oversized_line(session_pair_cli, monkeypatch):
    chat, peer, peer_obs = session_pair_cli
    monkeypatch.setattr(config, "MAX_FRAME_SIZE", 2048)
    for line in ("y" * 4096, "after", "/exit"):
        chat.input_func.feed(line)
    chat.chat_loop()

    assert peer.wait_until_closed(5)
    assert peer_obs.messages == ["after"]
    assert "Message not sent, it is too long (4096 characters)." in chat.output.stream.getvalue()
