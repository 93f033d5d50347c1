"""
Nostream - Global Constants and Configuration Values

This module defines all constants used throughout the Nostream package.
All magic numbers and configuration defaults are centralized here.

Author: nostream contributors
Version: 0.3.0
"""

# Version Information
VERSION = "0.3.0"
APP_NAME = "Nostream"

# Default relays
DEFAULT_RELAYS = [
    "wss://relay.damus.io",
    "wss://nos.lol",
    "wss://relay.snort.social",
]

# Event kinds (NIP-01, NIP-17, NIP-59)
KIND_SEAL = 13
KIND_PRIVATE_DIRECT_MESSAGE = 14
KIND_GIFT_WRAP = 1059

# Publishing timeouts (seconds)
PUBLISH_COOLDOWN = 3.0
RAPID_PUBLISH_COOLDOWN = 2.0
PUBLISH_TIMEOUT = 15.0

# Subscription timeouts (seconds)
SUBSCRIPTION_TIMEOUT = 10.0

# Connection timeouts (seconds)
POOL_STABILIZATION_DELAY = 2.0
POOL_CLEANUP_DELAY = 0.5

# Debounce timeouts (seconds)
MESSAGE_DEBOUNCE = 0.2

# Limits and thresholds
MAX_CONSECUTIVE_FAILURES = 2

# Time ranges
DEFAULT_MESSAGE_HISTORY_DAYS = 10
REFRESH_INTERVAL_MINUTES = 5
SECONDS_PER_DAY = 24 * 60 * 60
TWO_DAYS = 2 * SECONDS_PER_DAY

# Conversation tags
DEFAULT_TAG_SALT = "nostr-tools"
TAG_SEPARATOR = ":"

# Cryptography Constants (NIP-44 v2)
NIP44_VERSION = 2
NIP44_SALT = b"nip44-v2"
NIP44_NONCE_SIZE = 32
NIP44_MAC_SIZE = 32
NIP44_MIN_PLAINTEXT_SIZE = 1
NIP44_MAX_PLAINTEXT_SIZE = 65535
KEY_SIZE = 32

# Identity file encryption
SALT_SIZE = 16
NONCE_SIZE = 12
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 1

# Key encodings (NIP-19)
NPUB_PREFIX = "npub"
NSEC_PREFIX = "nsec"

# File Paths
DEFAULT_DATA_DIR = "~/.nostream"
IDENTITY_FILENAME = "identity.json"
CHAT_DATA_FILENAME = "nostream-chat-data.json"
CONFIG_FILENAME = "config.toml"
LOGS_DIR = "logs"
LOG_FILENAME = "nostream.log"

# Persisted layout version
STORAGE_FORMAT_VERSION = 1

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5
