"""
Nostream - Conversation tags and recipient normalization.

A conversation tag is an opaque, deterministic identifier of a participant
set. It is attached to every gift wrap as a ``d`` tag so that relays can be
asked for "everything tagged X" without learning who X's participants are.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, TypeVar

from .constants import DEFAULT_TAG_SALT, TAG_SEPARATOR
from .errors import CryptoError, ErrorCode, InvalidRecipientSet
from .keys import decode_public_key, encode_npub

logger = logging.getLogger(__name__)

T = TypeVar("T")


def remove_duplicates(items: Iterable[T], key: Optional[Callable[[T], str]] = None) -> List[T]:
    """Drop repeated items while keeping first-seen order."""
    seen = set()
    result = []
    for item in items:
        marker = key(item) if key else item
        if marker in seen:
            continue
        seen.add(marker)
        result.append(item)
    return result


def _decode_all(public_keys: Iterable[str]) -> List[str]:
    decoded = []
    for value in public_keys:
        try:
            decoded.append(decode_public_key(value))
        except CryptoError as e:
            raise InvalidRecipientSet(
                ErrorCode.E402_INVALID_RECIPIENT,
                f"Invalid recipient key: {e.message}",
                {"value": str(value)[:12]},
            ) from e
    return decoded


def derive_tag(public_keys: Iterable[str], salt: str = DEFAULT_TAG_SALT) -> str:
    """
    Derive the conversation tag for a participant set.

    Keys are decoded to hex, deduplicated and sorted, joined with ``:``
    together with the salt, and hashed with SHA-256. The result is the
    64-character hex digest.

    Args:
        public_keys: Every participant, the local user included
        salt: Network-wide salt appended before hashing

    Returns:
        Lowercase hex tag

    Raises:
        InvalidRecipientSet: If the set is empty or contains an invalid key
    """
    participants = sorted(set(_decode_all(public_keys)))
    if not participants:
        raise InvalidRecipientSet(message="Cannot derive a tag for an empty participant set")

    chat_key = TAG_SEPARATOR.join(participants + [salt])
    return hashlib.sha256(chat_key.encode("utf-8")).hexdigest()


def normalize_recipients(
    public_keys: Iterable[str],
    current_user: Optional[str] = None,
    ignore_current_user: bool = False,
) -> List[str]:
    """
    Decode recipients to hex, deduplicate, and add the local user.

    Args:
        public_keys: Keys in hex or npub form (a single string is accepted)
        current_user: The local user's public key
        ignore_current_user: Leave the local user out of the result

    Raises:
        InvalidRecipientSet: On invalid keys, or when the local user is
            required but unknown
    """
    if isinstance(public_keys, str):
        public_keys = [public_keys]

    result = remove_duplicates(_decode_all(public_keys))
    if ignore_current_user:
        return result

    if not current_user:
        raise InvalidRecipientSet(ErrorCode.E403_NO_CURRENT_USER, "No current user found")
    return remove_duplicates(result + _decode_all([current_user]))


def normalize_recipients_npub(
    public_keys: Iterable[str],
    current_user: Optional[str] = None,
    ignore_current_user: bool = False,
) -> List[str]:
    """Same as normalize_recipients but returns npub-encoded keys."""
    hex_keys = normalize_recipients(public_keys, current_user, ignore_current_user)
    return [encode_npub(key) for key in hex_keys]


@dataclass
class MessageTag:
    """Routing tag for one outgoing message and the keys it covers."""

    tag: str
    recipients: List[str]
    participants: List[str]


def create_message_tag(
    recipients: Iterable[str],
    current_user: str,
    ignore_current_user_on_tag: bool = False,
    ignore_current_user_on_recipients: bool = True,
    salt: str = DEFAULT_TAG_SALT,
) -> MessageTag:
    """
    Build the tag shared by every copy of a message.

    The same tag is used for all recipients so group conversations are
    identified anonymously. Leaving the local user out of the tag breaks
    symmetry with the other participants and should only be done
    deliberately.
    """
    targets = normalize_recipients(recipients, ignore_current_user=True)
    me = decode_public_key(current_user)

    if not ignore_current_user_on_recipients:
        targets = remove_duplicates(targets + [me])

    participants = list(targets)
    if not ignore_current_user_on_tag:
        participants = remove_duplicates(participants + [me])

    return MessageTag(tag=derive_tag(participants, salt), recipients=targets, participants=participants)
