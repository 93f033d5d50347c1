"""
Nostream - Payload encryption (NIP-44 version 2).

This module implements the symmetric layer used by both the seal and the
gift wrap:
- Key agreement: secp256k1 ECDH, shared x-coordinate
- Conversation key: HKDF-extract(salt="nip44-v2", shared_x)
- Message keys: HKDF-expand(conversation_key, info=nonce, 76 bytes)
  split into ChaCha20 key (32), ChaCha20 nonce (12), HMAC key (32)
- Padding: 2-byte length prefix, power-of-two based bucket sizes
- Encryption: ChaCha20 with initial counter 0
- Authentication: HMAC-SHA256 over nonce || ciphertext

Payload layout (base64): version(1) || nonce(32) || ciphertext || mac(32)

All primitives come from the cryptography library (Apache 2.0/BSD License).
"""

import base64
import binascii
import os
from typing import Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

from .constants import (
    NIP44_MAC_SIZE,
    NIP44_MAX_PLAINTEXT_SIZE,
    NIP44_MIN_PLAINTEXT_SIZE,
    NIP44_NONCE_SIZE,
    NIP44_SALT,
    NIP44_VERSION,
)
from .errors import CryptoError, DecryptionFailed, ErrorCode
from .keys import KeyMaterial

# Base64 payload bounds for padded plaintexts of 32 .. 65536 bytes
MIN_PAYLOAD_LENGTH = 132
MAX_PAYLOAD_LENGTH = 87472


def get_conversation_key(key_material: KeyMaterial, public_key_hex: str) -> bytes:
    """
    Derive the long-lived conversation key between two parties.

    Symmetric: get_conversation_key(a, B) == get_conversation_key(b, A).
    """
    shared_x = key_material.shared_secret(public_key_hex)
    extract = hmac.HMAC(NIP44_SALT, hashes.SHA256())
    extract.update(shared_x)
    return extract.finalize()


def get_message_keys(conversation_key: bytes, nonce: bytes) -> Tuple[bytes, bytes, bytes]:
    """Expand per-message ChaCha20 key, ChaCha20 nonce and HMAC key."""
    if len(conversation_key) != 32:
        raise CryptoError(ErrorCode.E103_INVALID_KEY, "Conversation key must be 32 bytes")
    if len(nonce) != NIP44_NONCE_SIZE:
        raise CryptoError(ErrorCode.E107_INVALID_PAYLOAD, "Nonce must be 32 bytes")

    okm = HKDFExpand(algorithm=hashes.SHA256(), length=76, info=nonce).derive(conversation_key)
    return okm[0:32], okm[32:44], okm[44:76]


def calc_padded_len(unpadded_len: int) -> int:
    """Return the padded size bucket for a plaintext length."""
    if unpadded_len <= 32:
        return 32
    next_power = 1 << (unpadded_len - 1).bit_length()
    chunk = 32 if next_power <= 256 else next_power // 8
    return chunk * ((unpadded_len - 1) // chunk + 1)


def pad(plaintext: str) -> bytes:
    unpadded = plaintext.encode("utf-8")
    length = len(unpadded)
    if not NIP44_MIN_PLAINTEXT_SIZE <= length <= NIP44_MAX_PLAINTEXT_SIZE:
        raise CryptoError(
            ErrorCode.E101_ENCRYPTION_FAILED,
            "Plaintext length out of range",
            {"length": length},
        )
    prefix = length.to_bytes(2, "big")
    return prefix + unpadded + bytes(calc_padded_len(length) - length)


def unpad(padded: bytes) -> str:
    length = int.from_bytes(padded[:2], "big")
    unpadded = padded[2 : 2 + length]
    if (
        length < NIP44_MIN_PLAINTEXT_SIZE
        or len(unpadded) != length
        or len(padded) != 2 + calc_padded_len(length)
    ):
        raise DecryptionFailed(message="Invalid padding")
    try:
        return unpadded.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionFailed(message="Plaintext is not valid UTF-8") from e


def _hmac_aad(key: bytes, message: bytes, aad: bytes) -> hmac.HMAC:
    mac = hmac.HMAC(key, hashes.SHA256())
    mac.update(aad + message)
    return mac


def _chacha20(key: bytes, nonce: bytes, data: bytes) -> bytes:
    # 4-byte little-endian block counter (0) followed by the 12-byte nonce
    cipher = Cipher(algorithms.ChaCha20(key, b"\x00" * 4 + nonce), mode=None)
    transform = cipher.encryptor()
    return transform.update(data) + transform.finalize()


def encrypt(plaintext: str, conversation_key: bytes, nonce: Optional[bytes] = None) -> str:
    """
    Encrypt a UTF-8 string into a versioned base64 payload.

    Args:
        plaintext: Message to encrypt (1..65535 bytes once UTF-8 encoded)
        conversation_key: 32-byte key from get_conversation_key
        nonce: Optional fixed 32-byte nonce (tests only)

    Returns:
        Base64 payload string

    Raises:
        CryptoError: If the plaintext or key is invalid
    """
    nonce = nonce or os.urandom(NIP44_NONCE_SIZE)
    chacha_key, chacha_nonce, hmac_key = get_message_keys(conversation_key, nonce)
    ciphertext = _chacha20(chacha_key, chacha_nonce, pad(plaintext))
    mac = _hmac_aad(hmac_key, ciphertext, nonce).finalize()
    return base64.b64encode(bytes([NIP44_VERSION]) + nonce + ciphertext + mac).decode("ascii")


def decode_payload(payload: str) -> Tuple[bytes, bytes, bytes]:
    """Split a payload into nonce, ciphertext and mac.

    Raises:
        DecryptionFailed: If the payload is malformed or of an unknown version
    """
    if not payload or payload[0] == "#":
        raise DecryptionFailed(ErrorCode.E107_INVALID_PAYLOAD, "Unknown encryption version")
    if not MIN_PAYLOAD_LENGTH <= len(payload) <= MAX_PAYLOAD_LENGTH:
        raise DecryptionFailed(
            ErrorCode.E107_INVALID_PAYLOAD,
            "Invalid payload size",
            {"length": len(payload)},
        )
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionFailed(ErrorCode.E107_INVALID_PAYLOAD, f"Invalid base64: {e}") from e

    if data[0] != NIP44_VERSION:
        raise DecryptionFailed(
            ErrorCode.E107_INVALID_PAYLOAD,
            "Unknown encryption version",
            {"version": data[0]},
        )
    nonce = data[1 : 1 + NIP44_NONCE_SIZE]
    ciphertext = data[1 + NIP44_NONCE_SIZE : -NIP44_MAC_SIZE]
    mac = data[-NIP44_MAC_SIZE:]
    return nonce, ciphertext, mac


def decrypt(payload: str, conversation_key: bytes) -> str:
    """
    Authenticate and decrypt a payload produced by ``encrypt``.

    Raises:
        DecryptionFailed: On malformed payloads, MAC mismatch (wrong key or
            tampering), or invalid padding
    """
    nonce, ciphertext, mac = decode_payload(payload)
    chacha_key, chacha_nonce, hmac_key = get_message_keys(conversation_key, nonce)

    try:
        _hmac_aad(hmac_key, ciphertext, nonce).verify(mac)
    except InvalidSignature as e:
        raise DecryptionFailed(message="Invalid MAC") from e

    return unpad(_chacha20(chacha_key, chacha_nonce, ciphertext))


def encrypt_for(key_material: KeyMaterial, public_key_hex: str, plaintext: str) -> str:
    """Encrypt ``plaintext`` from ``key_material`` to the holder of ``public_key_hex``."""
    return encrypt(plaintext, get_conversation_key(key_material, public_key_hex))


def decrypt_from(key_material: KeyMaterial, public_key_hex: str, payload: str) -> str:
    """Decrypt a payload sent by ``public_key_hex`` to ``key_material``.

    Key agreement failures on a foreign pubkey are reported as
    DecryptionFailed, since they come from untrusted relay input.
    """
    try:
        conversation_key = get_conversation_key(key_material, public_key_hex)
    except CryptoError as e:
        raise DecryptionFailed(message=f"Cannot derive conversation key: {e.message}") from e
    return decrypt(payload, conversation_key)
