"""Application-wide configuration constants."""

import platform
from pathlib import Path

# --- Identity ---
APP_ID = "pocketdrop-v1"
DEVICE_NAME = platform.node() or "pocketdrop"  # default to hostname, user can override

# --- Networking ---
API_HOST = "127.0.0.1"
API_PORT = 8765
DISCOVERY_PORT = 57143  # UDP
DISCOVERY_INTERVAL = 3  # seconds
TRANSFER_PORT = 4000  # TLS listener

# Chunks travel base64-encoded (~33% larger), so keep generous socket buffers
SOCKET_BUFFER_SIZE = 1024 * 1024  # 1 MiB
MAX_FRAME_SIZE = 1024 * 1024  # largest accepted control frame

# --- Transfer ---
CHUNK_SIZE = 8192  # 8 KiB
MAX_FILE_SIZE = 2 * 1024 ** 3  # files are held in memory whole
TRANSFER_STALL_TIMEOUT = 30.0  # seconds without a frame while a transfer is active

# --- Storage ---
CONFIG_DIR = Path.home() / ".pocketdrop"
CERT_FILE = CONFIG_DIR / "server-cert.pem"
KEY_FILE = CONFIG_DIR / "server-key.pem"
DEFAULT_SAVE_DIR = str(Path.home() / "Downloads" / "PocketDrop")
