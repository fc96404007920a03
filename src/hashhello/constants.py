"""
hashhello - Global Constants and Configuration Values

This module defines all constants used throughout the hashhello package.
All magic numbers and configuration defaults are centralized here.
"""

# Version Information
VERSION = "0.3.0"
APP_NAME = "hashhello"

# Identity Constants
NUMERIC_ID_LENGTH = 9
NUMERIC_ID_MODULUS = 10 ** NUMERIC_ID_LENGTH
CURVE_NAME = "P-256"

# Cryptography Constants
KEY_SIZE = 32  # 256 bits for AES-256-GCM
NONCE_SIZE = 12  # 96 bits for AES-GCM
SALT_SIZE = 16  # 128 bits
PBKDF2_ITERATIONS = 100000
PBKDF2_MIN_ITERATIONS = 100000

# Message Limits
MAX_ATTACHMENT_SIZE = 5 * 1024 * 1024  # 5 MB for image/audio payloads
MAX_CONTACT_NAME_LENGTH = 100
LAST_MESSAGE_PREVIEW_LENGTH = 80

# Reconnection
RECONNECT_INTERVAL = 10  # seconds between sweeps while a session is offline
CONNECT_TIMEOUT = 15  # seconds
HANDSHAKE_TIMEOUT = 10  # seconds from attaching a connection to a secure session

# Storage Keys (one file per key in the data directory)
DEFAULT_DATA_DIR = "~/.hashhello"
IDENTITY_BLOB = "identity.json"
SESSIONS_BLOB = "sessions.json"
CONTACTS_BLOB = "contacts.json"
SAVED_ID_FILENAME = "saved_id"
CONFIG_FILENAME = "config.toml"
LOGS_DIR = "logs"
LOG_FILENAME = "hashhello.log"

# Backup Bundle
BACKUP_VERSION = 1

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5
