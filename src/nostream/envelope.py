"""
Nostream - Envelope codec (Rumor -> Seal -> Gift Wrap).

Created for private direct messages over public relays.

Layering:
- Rumor: the plaintext draft, unsigned, identified by its content hash
- Seal (kind 13): rumor encrypted to the recipient and signed by the real
  sender key; timestamp randomized into the past two days
- Gift wrap (kind 1059): seal encrypted to the recipient and signed by a
  single-use ephemeral key; carries the ``p`` routing tag and any extra
  tags (such as the conversation ``d`` tag). Only this layer is published.

Unwrapping reverses the chain and re-checks the rumor hash, because the
rumor carries no signature of its own.
"""

import json
import logging
import secrets
from dataclasses import replace
from typing import Iterable, List, Optional, Sequence

from .constants import (
    KIND_GIFT_WRAP,
    KIND_PRIVATE_DIRECT_MESSAGE,
    KIND_SEAL,
    TWO_DAYS,
)
from .crypto import decrypt_from, encrypt_for
from .errors import (
    CryptoError,
    DecryptionFailed,
    ErrorCode,
    IntegrityViolation,
    InvalidRecipientSet,
)
from .event import Event, now, short_id
from .keys import KeyMaterial, decode_public_key

logger = logging.getLogger(__name__)

Tags = Sequence[Sequence[str]]


def random_timestamp(current: Optional[int] = None) -> int:
    """Return a timestamp drawn uniformly from the past two days.

    Used for seals and gift wraps so relays cannot correlate them with the
    moment a message was actually written.
    """
    current = now() if current is None else current
    return current - secrets.randbelow(TWO_DAYS + 1)


def build_chat_draft(
    content: str,
    recipients: Iterable[str],
    subject: Optional[str] = None,
    reply_to: Optional[str] = None,
    reply_relay: str = "",
) -> Event:
    """
    Build the kind-14 draft for a chat message.

    Args:
        content: Message text
        recipients: Recipient public keys (hex or npub)
        subject: Optional conversation title
        reply_to: Optional id of the rumor being replied to
        reply_relay: Relay hint for the replied-to event

    Returns:
        Unsigned draft event without pubkey or id
    """
    tags: List[List[str]] = [["p", decode_public_key(r)] for r in recipients]
    if subject:
        tags.append(["subject", subject])
    if reply_to:
        tags.append(["e", reply_to, reply_relay, "reply"])
    return Event(kind=KIND_PRIVATE_DIRECT_MESSAGE, content=content, tags=tags)


def create_rumor(draft: Event, key_material: KeyMaterial) -> Event:
    """Stamp author, time and content hash onto a draft. No signature."""
    rumor = replace(
        draft,
        pubkey=key_material.public_key,
        created_at=draft.created_at or now(),
        tags=[list(tag) for tag in draft.tags],
        sig=None,
    )
    return rumor.with_id()


def _rumor_to_json(rumor: Event) -> str:
    data = rumor.to_dict()
    data.pop("sig", None)
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


def create_seal(rumor: Event, key_material: KeyMaterial, recipient_public_key: str) -> Event:
    """
    Encrypt a rumor to one recipient and sign it with the sender key.

    Raises:
        CryptoError: If encryption or signing fails
    """
    try:
        content = encrypt_for(key_material, recipient_public_key, _rumor_to_json(rumor))
    except ValueError as e:
        raise CryptoError(ErrorCode.E101_ENCRYPTION_FAILED, f"Seal encryption failed: {e}") from e

    seal = Event(kind=KIND_SEAL, content=content, tags=[], created_at=random_timestamp())
    return key_material.sign_event(seal)


def create_wrap(seal: Event, recipient_public_key: str, extra_tags: Tags = ()) -> Event:
    """
    Encrypt a seal under a fresh ephemeral key and sign it with that key.

    The ephemeral key lives only for the duration of this call.
    """
    ephemeral = KeyMaterial.generate()
    recipient = decode_public_key(recipient_public_key)
    content = encrypt_for(ephemeral, recipient, seal.to_json())

    tags = [["p", recipient]] + [list(tag) for tag in extra_tags]
    wrap = Event(kind=KIND_GIFT_WRAP, content=content, tags=tags, created_at=random_timestamp())
    return ephemeral.sign_event(wrap)


def wrap(
    draft: Event,
    key_material: KeyMaterial,
    recipient_public_key: str,
    extra_tags: Tags = (),
) -> Event:
    """Turn a draft into a gift wrap addressed to a single recipient."""
    recipient = decode_public_key(recipient_public_key)
    rumor = create_rumor(draft, key_material)
    seal = create_seal(rumor, key_material, recipient)
    return create_wrap(seal, recipient, extra_tags)


def wrap_many(
    draft: Event,
    key_material: KeyMaterial,
    recipients: Sequence[str],
    extra_tags: Tags = (),
) -> List[Event]:
    """
    Produce one independent gift wrap per recipient plus one for the sender.

    All copies share the same rumor (same id and timestamp), so every
    participant stores the same logical message.

    Raises:
        InvalidRecipientSet: If ``recipients`` is empty
    """
    if not recipients:
        raise InvalidRecipientSet()

    targets = [key_material.public_key]
    for recipient in recipients:
        decoded = decode_public_key(recipient)
        if decoded not in targets:
            targets.append(decoded)

    rumor = create_rumor(draft, key_material)
    wraps = [
        create_wrap(create_seal(rumor, key_material, target), target, extra_tags)
        for target in targets
    ]
    logger.debug(f"Wrapped rumor {short_id(rumor.id)} for {len(wraps)} recipients")
    return wraps


def _open_layer(key_material: KeyMaterial, event: Event, layer: str) -> Event:
    plaintext = decrypt_from(key_material, event.pubkey, event.content)
    try:
        return Event.from_json(plaintext)
    except ValueError as e:
        raise DecryptionFailed(
            ErrorCode.E107_INVALID_PAYLOAD,
            f"Decrypted {layer} is not an event: {e}",
        ) from e


def unwrap(gift_wrap: Event, key_material: KeyMaterial) -> Event:
    """
    Open a gift wrap and return the verified rumor.

    Raises:
        DecryptionFailed: If the wrap or seal cannot be decrypted with this key
        IntegrityViolation: If the rumor hash or author does not check out
    """
    if gift_wrap.kind != KIND_GIFT_WRAP:
        raise DecryptionFailed(
            ErrorCode.E107_INVALID_PAYLOAD,
            "Not a gift wrap",
            {"kind": gift_wrap.kind},
        )

    seal = _open_layer(key_material, gift_wrap, "seal")
    if seal.kind != KIND_SEAL:
        raise DecryptionFailed(ErrorCode.E107_INVALID_PAYLOAD, "Wrapped event is not a seal")

    rumor = _open_layer(key_material, seal, "rumor")

    if not rumor.has_valid_id():
        raise IntegrityViolation(
            details={"wrap": gift_wrap.id, "rumor": rumor.id, "expected": rumor.compute_id()}
        )
    if rumor.pubkey != seal.pubkey:
        raise IntegrityViolation(
            message="Rumor author does not match seal signer",
            details={"wrap": gift_wrap.id, "rumor": rumor.id},
        )

    return replace(rumor, sig=None)


def try_unwrap(gift_wrap: Event, key_material: KeyMaterial) -> Optional[Event]:
    """Unwrap, returning None for wraps that are not ours or are corrupt."""
    try:
        return unwrap(gift_wrap, key_material)
    except IntegrityViolation as e:
        logger.warning(f"Discarding gift wrap {short_id(gift_wrap.id)}: {e.message}")
    except DecryptionFailed as e:
        logger.debug(f"Skipping gift wrap {short_id(gift_wrap.id)}: {e.message}")
    return None


def unwrap_many(gift_wraps: Iterable[Event], key_material: KeyMaterial) -> List[Event]:
    """Unwrap every event, drop failures, and sort survivors by created_at."""
    rumors = [r for r in (try_unwrap(w, key_material) for w in gift_wraps) if r is not None]
    rumors.sort(key=lambda r: r.created_at)
    return rumors
