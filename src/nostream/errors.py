"""
Nostream - Error codes and exception hierarchy.

Every failure raised by the package carries an ErrorCode so that log
lines and CLI output can be traced to their source. Subclasses only pick
a default code and message; callers may override either one.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes, grouped by subsystem in blocks of one hundred."""

    # General (E0xx)
    E001_UNKNOWN_ERROR = "E001"
    E002_INVALID_ARGUMENT = "E002"
    E005_OPERATION_FAILED = "E005"

    # Keys, NIP-44 payloads and envelopes (E1xx)
    E100_CRYPTO_ERROR = "E100"
    E101_ENCRYPTION_FAILED = "E101"
    E102_DECRYPTION_FAILED = "E102"
    E103_INVALID_KEY = "E103"
    E104_KEY_GENERATION_FAILED = "E104"
    E105_SIGNATURE_FAILED = "E105"
    E106_INTEGRITY_VIOLATION = "E106"
    E107_INVALID_PAYLOAD = "E107"

    # Relays and publishing (E2xx)
    E200_RELAY_ERROR = "E200"
    E201_PUBLISH_FAILED = "E201"
    E202_PUBLISH_TIMEOUT = "E202"
    E203_NO_RELAYS = "E203"
    E204_FETCH_FAILED = "E204"

    # Local identity file (E3xx)
    E300_IDENTITY_ERROR = "E300"
    E301_IDENTITY_NOT_FOUND = "E301"
    E302_IDENTITY_ALREADY_EXISTS = "E302"
    E303_IDENTITY_LOAD_FAILED = "E303"
    E304_IDENTITY_SAVE_FAILED = "E304"

    # Recipients and conversation tags (E4xx)
    E400_RECIPIENT_ERROR = "E400"
    E401_EMPTY_RECIPIENT_SET = "E401"
    E402_INVALID_RECIPIENT = "E402"
    E403_NO_CURRENT_USER = "E403"

    # Subscriptions (E5xx)
    E500_SUBSCRIPTION_ERROR = "E500"
    E501_SUBSCRIPTION_TIMEOUT = "E501"
    E502_MANAGER_DESTROYED = "E502"

    # Chat storage (E6xx)
    E600_STORAGE_ERROR = "E600"
    E601_STORAGE_LOAD_FAILED = "E601"
    E602_STORAGE_SAVE_FAILED = "E602"

    # Configuration (E7xx)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E702_CONFIG_SAVE_FAILED = "E702"
    E703_INVALID_CONFIG = "E703"
    E704_CONFIG_PARSE_ERROR = "E704"


class NostreamError(Exception):
    """Root of every exception raised by nostream.

    Attributes:
        code: ErrorCode identifying the failure
        message: Human-readable description
        details: Extra context for logs (relay reasons, paths, ids)
    """

    default_code = ErrorCode.E001_UNKNOWN_ERROR
    default_message = "Unexpected error"

    def __init__(
        self,
        code: Optional[ErrorCode] = None,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = code or self.default_code
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(f"[{self.code.value}] {self.message}")

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form, used for publish reports and CLI output."""
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CryptoError(NostreamError):
    """Key agreement, AEAD or signing failure."""

    default_code = ErrorCode.E100_CRYPTO_ERROR
    default_message = "Cryptographic operation failed"


class DecryptionFailed(CryptoError):
    """Raised when a payload cannot be opened with the given key.

    This is the normal outcome for gift wraps addressed to someone else,
    so callers are expected to skip the event quietly.
    """

    default_code = ErrorCode.E102_DECRYPTION_FAILED
    default_message = "Decryption failed"


class IntegrityViolation(CryptoError):
    """Raised when a decrypted rumor does not match its content hash."""

    default_code = ErrorCode.E106_INTEGRITY_VIOLATION
    default_message = "Rumor integrity check failed"


class InvalidRecipientSet(NostreamError):
    default_code = ErrorCode.E401_EMPTY_RECIPIENT_SET
    default_message = "At least one recipient is required"


class PublishFailed(NostreamError):
    """No relay acknowledged a publish."""

    default_code = ErrorCode.E201_PUBLISH_FAILED
    default_message = "Failed to publish to any relays"


class SubscriptionError(NostreamError):
    default_code = ErrorCode.E500_SUBSCRIPTION_ERROR
    default_message = "Subscription operation failed"


class SubscriptionTimeout(SubscriptionError):
    """Raised (and recovered internally) when a subscription outlives its timeout."""

    default_code = ErrorCode.E501_SUBSCRIPTION_TIMEOUT
    default_message = "Subscription timed out"


class StorageFailure(NostreamError):
    """Persisted chat state cannot be read or written."""

    default_code = ErrorCode.E600_STORAGE_ERROR
    default_message = "Storage operation failed"


class IdentityError(NostreamError):
    """Loading, saving or importing the local key failed."""

    default_code = ErrorCode.E300_IDENTITY_ERROR
    default_message = "Identity operation failed"


class ConfigError(NostreamError):
    """Configuration file could not be read, parsed or written."""

    default_code = ErrorCode.E700_CONFIG_ERROR
    default_message = "Configuration operation failed"
