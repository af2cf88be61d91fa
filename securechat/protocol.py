"""
Wire protocol: typed messages, encrypted encoding and stream framing.

Every message is a pydantic model carrying a literal ``type`` field. It is
serialized to compact JSON and encrypted with the shared key, both for the
discovery datagrams and for the frames sent over an established session.
On a stream, each encrypted message is preceded by a 4-byte big-endian
length.
"""
import json
import logging
import socket
import struct
from typing import Dict, Literal, Optional, Type, Union
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from . import config
from .crypto import (
    AuthenticationError,
    CryptoManager,
    DecodeError,
    MalformedFrameError,
)

logger = logging.getLogger(__name__)

LENGTH_STRUCT = struct.Struct('>I')

__all__ = [
    'AuthenticationError', 'ChatMessage', 'DecodeError', 'DiscoveryRequest',
    'DiscoveryResponse', 'MalformedFrameError', 'Message',
    'UnknownMessageTypeError', 'decode', 'encode', 'recv_frame', 'send_frame',
]


class UnknownMessageTypeError(DecodeError):
    """The frame decrypted cleanly but names a message type we do not know."""


class DiscoveryRequest(BaseModel):
    """Broadcast by a client looking for a server. Identifies nobody."""
    type: Literal['DiscoveryRequest'] = 'DiscoveryRequest'
    marker: str = config.DISCOVERY_MARKER


class DiscoveryResponse(BaseModel):
    """Unicast reply from a server to a DiscoveryRequest."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal['DiscoveryResponse'] = 'DiscoveryResponse'
    server_id: str = Field(alias='ServerId', pattern=r'^\d{5}$')
    tcp_port: int = Field(alias='TcpPort', ge=1, le=65535)


class ChatMessage(BaseModel):
    type: Literal['ChatMessage'] = 'ChatMessage'
    text: str


Message = Union[DiscoveryRequest, DiscoveryResponse, ChatMessage]

MESSAGE_TYPES: Dict[str, Type[BaseModel]] = {
    'DiscoveryRequest': DiscoveryRequest,
    'DiscoveryResponse': DiscoveryResponse,
    'ChatMessage': ChatMessage,
}


def encode(message: Message, key: bytes) -> bytes:
    """Serialize and encrypt a message with the given key.

    The encrypted token is preceded by its own 4-byte length so a frame
    missing trailing bytes is reported as truncated, not as tampered.
    """
    payload = message.model_dump_json(by_alias=True).encode('utf-8')
    token = CryptoManager(key).encrypt_message(payload)
    return LENGTH_STRUCT.pack(len(token)) + token


def decode(data: bytes, key: bytes) -> Message:
    """Decrypt and parse a message.

    Raises:
        MalformedFrameError: truncated or garbled frame, or bad message body.
        AuthenticationError: wrong key or corrupted data.
        UnknownMessageTypeError: the message type is not one we understand.
    """
    if len(data) < LENGTH_STRUCT.size:
        raise MalformedFrameError(f"Frame too short: {len(data)} bytes")
    (length,) = LENGTH_STRUCT.unpack_from(data)
    token = data[LENGTH_STRUCT.size:]
    if len(token) != length:
        raise MalformedFrameError(f"Frame length mismatch: header says {length}, got {len(token)}")

    plaintext = CryptoManager(key).decrypt_message(token)
    try:
        obj = json.loads(plaintext.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedFrameError(f"Invalid message payload: {e}") from e
    if not isinstance(obj, dict):
        raise MalformedFrameError("Message payload is not an object")

    msg_type = obj.get('type')
    if not isinstance(msg_type, str):
        raise MalformedFrameError(f"Message type must be a string, got {type(msg_type).__name__}")
    model = MESSAGE_TYPES.get(msg_type)
    if model is None:
        raise UnknownMessageTypeError(f"Unknown message type: {msg_type!r}")
    try:
        return model.model_validate(obj)
    except ValidationError as e:
        raise MalformedFrameError(f"Invalid {msg_type}: {e}") from e


def send_frame(sock: socket.socket, payload: bytes) -> None:
    """Write one length-prefixed frame to a stream socket."""
    if len(payload) > config.MAX_FRAME_SIZE:
        raise ValueError("Frame exceeds maximum size")
    sock.sendall(LENGTH_STRUCT.pack(len(payload)) + payload)


def _recv_exactly(sock: socket.socket, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        chunk = sock.recv(min(n - len(buf), config.BUFFER_SIZE))
        if not chunk:
            break
        buf.extend(chunk)
    return bytes(buf)


def recv_frame(sock: socket.socket) -> Optional[bytes]:
    """Read one length-prefixed frame.

    Returns None if the peer closed the stream cleanly between frames.
    """
    header = _recv_exactly(sock, LENGTH_STRUCT.size)
    if not header:
        return None
    if len(header) < LENGTH_STRUCT.size:
        raise ConnectionError("Connection closed mid-frame")

    (length,) = LENGTH_STRUCT.unpack(header)
    if length > config.MAX_FRAME_SIZE:
        raise MalformedFrameError(f"Frame too large: {length} > {config.MAX_FRAME_SIZE}")

    payload = _recv_exactly(sock, length)
    if len(payload) < length:
        raise ConnectionError("Connection closed mid-frame")
    return payload
