"""
Secure LAN Chat

Find a peer on the local network by a 5-digit ID and chat over an
encrypted direct connection.
"""

__version__ = "1.0.0"
__license__ = "MIT"

from .crypto import CryptoManager, derive_key
from .discovery import DiscoveryRequester, DiscoveryResponder
from .session import SessionManager, SessionObserver, SessionState
from .cli import ChatCLI

__all__ = [
    'CryptoManager', 'derive_key', 'DiscoveryRequester', 'DiscoveryResponder',
    'SessionManager', 'SessionObserver', 'SessionState', 'ChatCLI',
]
