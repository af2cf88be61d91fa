"""
Configuration settings for the secure LAN chat application.
"""

# Network settings
DEFAULT_HOST = '0.0.0.0'
DISCOVERY_PORT = 10000
BROADCAST_ADDRESS = '255.255.255.255'
BUFFER_SIZE = 4096
MAX_FRAME_SIZE = 1024 * 1024
CONNECT_TIMEOUT = 10.0
# How often listener threads wake up to check whether they were stopped
SOCKET_POLL_INTERVAL = 0.5

# Discovery settings
DISCOVERY_TIMEOUT = 30
DISCOVERY_MARKER = 'ClientHello'
SERVER_ID_MIN = 10000
SERVER_ID_MAX = 99999

# Crypto settings
SHARED_PASSPHRASE = 'MySuperSecretPassword'
KDF_SALT = b'securechat-frame-key-v1'
KDF_ITERATIONS = 200_000
KEY_SIZE = 32

# Chat settings
EXIT_COMMAND = '/exit'
PROMPT = 'You: '
