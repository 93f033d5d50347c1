"""
Nostream - Private direct messages over Nostr relays

Messaging core for gift-wrapped private messages: the rumor/seal/wrap
envelope codec, conversation tags, time-ranged history synchronization,
and subscription and publish lifecycle management.

Author: nostream contributors
Version: 0.3.0
License: MIT
"""

__version__ = "0.3.0"
__author__ = "nostream contributors"
__license__ = "MIT"

from .chat_store import ChatRecord, ChatStore, TimeRange
from .config import Config
from .constants import APP_NAME, VERSION
from .envelope import unwrap, unwrap_many, wrap, wrap_many
from .errors import (
    ConfigError,
    CryptoError,
    DecryptionFailed,
    ErrorCode,
    IdentityError,
    IntegrityViolation,
    InvalidRecipientSet,
    NostreamError,
    PublishFailed,
    StorageFailure,
    SubscriptionError,
    SubscriptionTimeout,
)
from .event import Event
from .keys import KeyMaterial
from .messenger import ChatRoom, Messenger
from .publisher import PublishCoordinator, PublishReport
from .relay_pool import MemoryRelayPool, RelayPool
from .subscription import DebouncedSubscriptionManager, SubscriptionHandle, SubscriptionManager
from .tags import derive_tag

__all__ = [
    "APP_NAME",
    "VERSION",
    "ChatRecord",
    "ChatRoom",
    "ChatStore",
    "Config",
    "ConfigError",
    "CryptoError",
    "DebouncedSubscriptionManager",
    "DecryptionFailed",
    "ErrorCode",
    "Event",
    "IdentityError",
    "IntegrityViolation",
    "InvalidRecipientSet",
    "KeyMaterial",
    "MemoryRelayPool",
    "Messenger",
    "NostreamError",
    "PublishCoordinator",
    "PublishFailed",
    "PublishReport",
    "RelayPool",
    "StorageFailure",
    "SubscriptionError",
    "SubscriptionHandle",
    "SubscriptionManager",
    "SubscriptionTimeout",
    "TimeRange",
    "__author__",
    "__license__",
    "__version__",
    "derive_tag",
    "unwrap",
    "unwrap_many",
    "wrap",
    "wrap_many",
]
