"""
Cryptographic operations for the secure chat application.
"""
import base64
import binascii
import functools
import logging
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from . import config

logger = logging.getLogger(__name__)

# version (1) + timestamp (8) + IV (16) + HMAC (32)
_TOKEN_OVERHEAD = 57
_TOKEN_VERSION = 0x80
_BLOCK_SIZE = 16


class DecodeError(Exception):
    """Base class for frames that could not be turned back into a message."""


class MalformedFrameError(DecodeError):
    """The frame is truncated or structurally invalid."""


class AuthenticationError(DecodeError):
    """The frame failed its integrity check (wrong key or corrupted data)."""


@functools.lru_cache(maxsize=8)
def derive_key(passphrase: str) -> bytes:
    """Derive a Fernet key from a shared passphrase using PBKDF2-HMAC-SHA256."""
    if not passphrase:
        raise ValueError("Passphrase must not be empty")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=config.KEY_SIZE,
        salt=config.KDF_SALT,
        iterations=config.KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))


class CryptoManager:
    def __init__(self, key: bytes):
        self.fernet = Fernet(key)

    def encrypt_message(self, plaintext: bytes) -> bytes:
        """Encrypt bytes; every call uses a fresh random IV."""
        return self.fernet.encrypt(plaintext)

    def decrypt_message(self, token: bytes) -> bytes:
        """Decrypt a token produced by encrypt_message.

        Raises MalformedFrameError for tokens that cannot be well formed and
        AuthenticationError when the integrity check fails. A token cut short
        by whole cipher blocks still looks well formed and fails as
        AuthenticationError here; protocol.decode checks the frame length
        first to catch that case.
        """
        self._check_structure(token)
        try:
            return self.fernet.decrypt(token)
        except InvalidToken as e:
            raise AuthenticationError("Frame failed authentication") from e

    @staticmethod
    def _check_structure(token: bytes) -> None:
        try:
            raw = base64.urlsafe_b64decode(token)
        except (binascii.Error, ValueError) as e:
            raise MalformedFrameError(f"Frame is not valid base64: {e}") from e

        if len(raw) < _TOKEN_OVERHEAD + _BLOCK_SIZE:
            raise MalformedFrameError(f"Frame too short: {len(raw)} bytes")
        if raw[0] != _TOKEN_VERSION:
            raise MalformedFrameError(f"Unsupported frame version: {raw[0]:#x}")
        if (len(raw) - _TOKEN_OVERHEAD) % _BLOCK_SIZE:
            raise MalformedFrameError("Frame length is not block aligned")
