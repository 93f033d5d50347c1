"""
Nostream - Identity management.

Manages the local user's secp256k1 key and its password-protected storage.

The identity file is protected with:
- Argon2id key derivation (3 iterations, 64 MB, unique 16-byte salt)
- ChaCha20-Poly1305 authenticated encryption (unique 12-byte nonce)

Losing the file or the password loses every message addressed to the key;
there is no recovery path.
"""

import base64
import binascii
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles
from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    KEY_SIZE,
    NONCE_SIZE,
    SALT_SIZE,
)
from .errors import CryptoError, ErrorCode, IdentityError
from .keys import KeyMaterial

logger = logging.getLogger(__name__)

IDENTITY_FILE_VERSION = "1.0"


def _derive_file_key(password: str, salt: bytes) -> bytes:
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=KEY_SIZE,
        type=Type.ID,
    )


def encrypt_identity_file(identity_data: Dict[str, Any], password: str) -> Dict[str, str]:
    """Encrypt identity data with a password-derived key."""
    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    key = _derive_file_key(password, salt)
    ciphertext = ChaCha20Poly1305(key).encrypt(nonce, json.dumps(identity_data).encode("utf-8"), None)

    return {
        "salt": base64.b64encode(salt).decode("utf-8"),
        "nonce": base64.b64encode(nonce).decode("utf-8"),
        "ciphertext": base64.b64encode(ciphertext).decode("utf-8"),
        "version": IDENTITY_FILE_VERSION,
    }


def decrypt_identity_file(encrypted_data: Dict[str, str], password: str) -> Dict[str, Any]:
    """
    Decrypt identity data.

    Raises:
        CryptoError: If the password is incorrect or the file is corrupted
    """
    try:
        salt = base64.b64decode(encrypted_data["salt"])
        nonce = base64.b64decode(encrypted_data["nonce"])
        ciphertext = base64.b64decode(encrypted_data["ciphertext"])
    except (KeyError, TypeError, binascii.Error) as e:
        raise CryptoError(ErrorCode.E102_DECRYPTION_FAILED, f"Malformed identity file: {e!r}") from e

    key = _derive_file_key(password, salt)
    try:
        plaintext = ChaCha20Poly1305(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise CryptoError(
            ErrorCode.E102_DECRYPTION_FAILED,
            "Failed to decrypt identity. Incorrect password or corrupted file.",
        ) from e
    try:
        payload = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CryptoError(ErrorCode.E107_INVALID_PAYLOAD, f"Identity payload is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise CryptoError(ErrorCode.E107_INVALID_PAYLOAD, "Identity payload is not an object")
    return payload


class IdentityManager:
    """
    The local user's key, kept in one password-protected file.

    Attributes:
        identity_file: Location of the encrypted file
        key_material: Key loaded or created in this session, if any
        created_at: ISO timestamp recorded when the key was first stored
    """

    def __init__(self, identity_file: Path):
        self.identity_file = Path(identity_file)
        self.key_material: Optional[KeyMaterial] = None
        self.created_at: Optional[str] = None

    def identity_exists(self) -> bool:
        return self.identity_file.exists()

    def _payload(self) -> Dict[str, Any]:
        return {
            "private_key": self.key_material.get_private_key_bytes().hex(),
            "public_key": self.key_material.public_key,
            "created_at": self.created_at,
        }

    def create_identity(self, password: str) -> KeyMaterial:
        """Generate a fresh key and store it encrypted with ``password``.

        Raises:
            IdentityError: If an identity already exists
        """
        return self.import_identity(KeyMaterial.generate(), password)

    def import_identity(self, secret, password: str) -> KeyMaterial:
        """Store an existing key (KeyMaterial, hex or nsec).

        Raises:
            IdentityError: If an identity already exists or the key is invalid
        """
        if self.identity_exists():
            raise IdentityError(
                ErrorCode.E302_IDENTITY_ALREADY_EXISTS,
                "Identity already exists",
                {"path": str(self.identity_file)},
            )

        if isinstance(secret, KeyMaterial):
            key_material = secret
        else:
            try:
                key_material = KeyMaterial.from_secret(secret)
            except CryptoError as e:
                raise IdentityError(ErrorCode.E300_IDENTITY_ERROR, f"Invalid private key: {e.message}") from e

        self.key_material = key_material
        self.created_at = datetime.now(timezone.utc).isoformat()
        self.save_identity(password)
        logger.info(f"Stored identity {key_material.npub[:16]}...")
        return key_material

    def load_identity(self, password: str) -> Optional[KeyMaterial]:
        """
        Decrypt the identity file.

        Returns:
            The stored key, or None when there is no file, the password is
            wrong, or the file is not a well-formed identity

        Raises:
            IdentityError: If the file exists but cannot be read
        """
        if not self.identity_exists():
            logger.debug(f"No identity at {self.identity_file}")
            return None

        try:
            encrypted = json.loads(self.identity_file.read_text(encoding="utf-8"))
            payload = decrypt_identity_file(encrypted, password)
            self.key_material = KeyMaterial.from_secret(payload["private_key"])
            self.created_at = payload.get("created_at")
        except CryptoError as e:
            logger.warning(f"Cannot open identity (wrong password?): {e}")
            return None
        except json.JSONDecodeError as e:
            logger.error(f"Identity file is not valid JSON: {e}")
            return None
        except (KeyError, TypeError, AttributeError) as e:
            logger.error(f"Identity payload is malformed: {e!r}")
            return None
        except OSError as e:
            raise IdentityError(
                ErrorCode.E303_IDENTITY_LOAD_FAILED,
                f"Failed to read identity: {e}",
                {"path": str(self.identity_file)},
            ) from e

        logger.info(f"Loaded identity {self.key_material.npub[:16]}...")
        return self.key_material

    def _encrypted_document(self, password: str) -> Optional[str]:
        if not self.key_material:
            logger.warning("Nothing to save: no identity loaded")
            return None
        return json.dumps(encrypt_identity_file(self._payload(), password), indent=2)

    def _save_failed(self, e: OSError) -> IdentityError:
        logger.error(f"Writing {self.identity_file} failed: {e}", exc_info=True)
        return IdentityError(
            ErrorCode.E304_IDENTITY_SAVE_FAILED,
            f"Failed to save identity: {e}",
            {"path": str(self.identity_file)},
        )

    def save_identity(self, password: str) -> None:
        """Encrypt and write the identity, replacing the file atomically."""
        document = self._encrypted_document(password)
        if document is None:
            return
        temp_path = self.identity_file.with_name(self.identity_file.name + ".tmp")
        try:
            self.identity_file.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(document, encoding="utf-8")
            os.replace(temp_path, self.identity_file)
        except OSError as e:
            raise self._save_failed(e) from e

    async def save_identity_async(self, password: str) -> None:
        """save_identity() with the write done through aiofiles."""
        document = self._encrypted_document(password)
        if document is None:
            return
        temp_path = self.identity_file.with_name(self.identity_file.name + ".tmp")
        try:
            self.identity_file.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(document)
            os.replace(temp_path, self.identity_file)
        except OSError as e:
            raise self._save_failed(e) from e

    def change_password(self, old_password: str, new_password: str) -> bool:
        """Re-encrypt the file under ``new_password``. False if ``old_password`` is wrong."""
        if self.load_identity(old_password) is None:
            return False
        self.save_identity(new_password)
        return True

    def delete_identity(self, password: str) -> bool:
        """Remove the file once ``password`` has been checked against it.

        Returns:
            False if there is no identity or the password is wrong
        """
        if self.load_identity(password) is None:
            logger.error("Refusing to delete identity: password check failed")
            return False

        try:
            self.identity_file.unlink()
        except OSError as e:
            raise IdentityError(ErrorCode.E300_IDENTITY_ERROR, f"Failed to delete identity file: {e}") from e

        self.key_material = None
        self.created_at = None
        logger.info("Identity deleted")
        return True
