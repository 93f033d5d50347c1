"""
Nostream - Key material and key encodings.

Provides the ``KeyMaterial`` capability handed to the envelope codec and
the messenger. It wraps a secp256k1 private key and offers exactly what the
protocol needs: the x-only public key, ECDH shared secrets, and event
signing. Nothing else in the package reaches into private key internals.

Public keys travel as 64-char lowercase hex (x-only) or as NIP-19 ``npub``
strings; private keys as hex or ``nsec``.
"""

import secrets
from dataclasses import replace
from typing import Optional

import bech32
import coincurve
from cryptography.hazmat.primitives.asymmetric import ec

from .constants import KEY_SIZE, NPUB_PREFIX, NSEC_PREFIX
from .errors import CryptoError, ErrorCode
from .event import Event, compute_event_id

# Order of the secp256k1 group
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

_HEX_DIGITS = set("0123456789abcdef")


def is_hex_key(value: str) -> bool:
    """Check whether ``value`` looks like a 32-byte lowercase/uppercase hex key."""
    return len(value) == KEY_SIZE * 2 and set(value.lower()) <= _HEX_DIGITS


def _bech32_encode(prefix: str, data: bytes) -> str:
    words = bech32.convertbits(list(data), 8, 5)
    return bech32.bech32_encode(prefix, words)


def _bech32_decode(prefix: str, value: str) -> bytes:
    decoded = bech32.bech32_decode(value)
    hrp, words = decoded[0], decoded[1]
    if hrp != prefix or words is None:
        raise CryptoError(
            ErrorCode.E103_INVALID_KEY,
            f"Invalid {prefix} encoding",
            {"value": value[:12]},
        )
    data = bech32.convertbits(words, 5, 8, False)
    if data is None or len(data) != KEY_SIZE:
        raise CryptoError(ErrorCode.E103_INVALID_KEY, f"Invalid {prefix} payload length")
    return bytes(data)


def encode_npub(public_key_hex: str) -> str:
    """Encode a hex public key as ``npub``."""
    return _bech32_encode(NPUB_PREFIX, bytes.fromhex(decode_public_key(public_key_hex)))


def encode_nsec(private_key: bytes) -> str:
    """Encode raw private key bytes as ``nsec``."""
    return _bech32_encode(NSEC_PREFIX, private_key)


def decode_public_key(value: str) -> str:
    """Decode a public key given as hex or ``npub`` into canonical hex.

    Raises:
        CryptoError: If the value is neither a valid hex key nor an npub
    """
    if not isinstance(value, str):
        raise CryptoError(ErrorCode.E103_INVALID_KEY, "Public key must be a string")

    value = value.strip()
    if value.lower().startswith(NPUB_PREFIX):
        return _bech32_decode(NPUB_PREFIX, value.lower()).hex()
    if is_hex_key(value):
        return value.lower()

    raise CryptoError(
        ErrorCode.E103_INVALID_KEY,
        "Public key must be 64 hex characters or an npub",
        {"value": value[:12]},
    )


def decode_private_key(value: str) -> bytes:
    """Decode a private key given as hex or ``nsec`` into raw bytes."""
    value = value.strip()
    if value.lower().startswith(NSEC_PREFIX):
        return _bech32_decode(NSEC_PREFIX, value.lower())
    if is_hex_key(value):
        return bytes.fromhex(value)
    raise CryptoError(ErrorCode.E103_INVALID_KEY, "Private key must be 64 hex characters or an nsec")


def load_public_key(public_key_hex: str) -> ec.EllipticCurvePublicKey:
    """Lift an x-only public key to a curve point (even y).

    The ECDH shared x-coordinate does not depend on the parity of y, so
    the even lift is sufficient for key agreement.
    """
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(
            ec.SECP256K1(), b"\x02" + bytes.fromhex(decode_public_key(public_key_hex))
        )
    except ValueError as e:
        raise CryptoError(
            ErrorCode.E103_INVALID_KEY,
            f"Public key is not on secp256k1: {e}",
            {"pubkey": public_key_hex[:12]},
        ) from e


class KeyMaterial:
    """
    Holds one secp256k1 private key and exposes the operations built on it.

    Instances are created for the local user (from storage or import) and
    for every gift wrap, where a fresh instance is generated, used once,
    and dropped.
    """

    def __init__(self, private_key: Optional[ec.EllipticCurvePrivateKey] = None):
        if private_key is None:
            private_key = ec.derive_private_key(
                secrets.randbelow(SECP256K1_ORDER - 1) + 1, ec.SECP256K1()
            )
        self._private_key = private_key
        numbers = private_key.public_key().public_numbers()
        self.public_key = numbers.x.to_bytes(KEY_SIZE, "big").hex()

    @classmethod
    def generate(cls) -> "KeyMaterial":
        """Create a fresh random key."""
        return cls()

    @classmethod
    def from_bytes(cls, private_bytes: bytes) -> "KeyMaterial":
        if len(private_bytes) != KEY_SIZE:
            raise CryptoError(ErrorCode.E103_INVALID_KEY, "Private key must be 32 bytes")
        value = int.from_bytes(private_bytes, "big")
        if not 1 <= value < SECP256K1_ORDER:
            raise CryptoError(ErrorCode.E103_INVALID_KEY, "Private key out of range")
        return cls(ec.derive_private_key(value, ec.SECP256K1()))

    @classmethod
    def from_secret(cls, value: str) -> "KeyMaterial":
        """Import a key given as hex or ``nsec``."""
        return cls.from_bytes(decode_private_key(value))

    def get_private_key_bytes(self) -> bytes:
        return self._private_key.private_numbers().private_value.to_bytes(KEY_SIZE, "big")

    @property
    def npub(self) -> str:
        return encode_npub(self.public_key)

    @property
    def nsec(self) -> str:
        return encode_nsec(self.get_private_key_bytes())

    def shared_secret(self, public_key_hex: str) -> bytes:
        """Perform ECDH with a counterpart key and return the shared x-coordinate."""
        peer = load_public_key(public_key_hex)
        try:
            return self._private_key.exchange(ec.ECDH(), peer)
        except ValueError as e:
            raise CryptoError(ErrorCode.E100_CRYPTO_ERROR, f"Key agreement failed: {e}") from e

    def sign_event(self, event: Event) -> Event:
        """Return ``event`` stamped with this key's pubkey, id, and BIP-340 signature."""
        event_id = compute_event_id(self.public_key, event.created_at, event.kind, event.tags, event.content)
        sig = schnorr_sign(self.get_private_key_bytes(), bytes.fromhex(event_id))
        return replace(event, pubkey=self.public_key, id=event_id, sig=sig.hex())

    def __repr__(self) -> str:
        return f"KeyMaterial(public_key={self.public_key[:12]}...)"


def schnorr_sign(private_key: bytes, message: bytes, aux_randomness: Optional[bytes] = None) -> bytes:
    """BIP-340 signature over a 32-byte message.

    ``aux_randomness`` defaults to fresh random bytes.

    Raises:
        CryptoError: If the key or message is malformed
    """
    if aux_randomness is None:
        aux_randomness = secrets.token_bytes(KEY_SIZE)
    try:
        return coincurve.PrivateKey(private_key).sign_schnorr(message, aux_randomness)
    except (ValueError, TypeError) as e:
        raise CryptoError(ErrorCode.E105_SIGNATURE_FAILED, f"Signing failed: {e}") from e


def schnorr_verify(public_key_hex: str, message: bytes, signature: bytes) -> bool:
    """Check a BIP-340 signature against an x-only public key."""
    if len(signature) != KEY_SIZE * 2 or len(message) != KEY_SIZE:
        return False
    try:
        return coincurve.PublicKeyXOnly(bytes.fromhex(public_key_hex)).verify(signature, message)
    except ValueError:
        return False


def verify_event(event: Event) -> bool:
    """Check an event's id and Schnorr signature against its pubkey."""
    if not event.sig or not event.has_valid_id():
        return False
    try:
        signature = bytes.fromhex(event.sig)
        public_key_hex = decode_public_key(event.pubkey)
    except (ValueError, CryptoError):
        return False
    return schnorr_verify(public_key_hex, bytes.fromhex(event.id), signature)
