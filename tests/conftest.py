import threading
import pytest
from securechat.crypto import CryptoManager, derive_key
from securechat.protocol import LENGTH_STRUCT
from securechat.session import SessionManager, SessionObserver

TEST_PASSPHRASE = "MySuperSecretPassword"


def seal(plaintext, key):
    """Encrypt raw plaintext into a codec frame, bypassing message models."""
    token = CryptoManager(key).encrypt_message(plaintext)
    return LENGTH_STRUCT.pack(len(token)) + token


class RecordingObserver(SessionObserver):
    def __init__(self):
        self.established = threading.Event()
        self.closed = threading.Event()
        self.got_message = threading.Event()
        self.messages = []
        self.errors = []
        self.close_reasons = []

    def on_established(self, session):
        self.established.set()

    def on_message(self, session, text):
        self.messages.append(text)
        self.got_message.set()

    def on_closed(self, session, reason):
        self.close_reasons.append(reason)
        self.closed.set()

    def on_error(self, message):
        self.errors.append(message)


@pytest.fixture
def key():
    return derive_key(TEST_PASSPHRASE)


@pytest.fixture
def other_key():
    return derive_key("a-different-passphrase")


@pytest.fixture
def session_pair(key):
    """A server and a client manager with an established session between them."""
    server_obs, client_obs = RecordingObserver(), RecordingObserver()
    server = SessionManager(key, observer=server_obs)
    client = SessionManager(key, observer=client_obs)
    port = server.listen("127.0.0.1")
    assert client.connect("127.0.0.1", port)
    assert server_obs.established.wait(5)
    yield server, server_obs, client, client_obs
    client.shutdown()
    server.shutdown()
