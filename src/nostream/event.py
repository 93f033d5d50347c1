"""
Nostream - Event model and canonical serialization.

Every layer of the envelope (rumor, seal, gift wrap) is an event with the
same shape. The event id is the SHA-256 of the canonical NIP-01 array
``[0, pubkey, created_at, kind, tags, content]`` and anchors integrity of
rumors, which are never signed.
"""

import hashlib
import json
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional


def now() -> int:
    """Current unix time in whole seconds."""
    return int(time.time())


def serialize_event(pubkey: str, created_at: int, kind: int, tags: List[List[str]], content: str) -> str:
    """Return the canonical serialization used for event ids."""
    return json.dumps(
        [0, pubkey, created_at, kind, tags, content],
        separators=(",", ":"),
        ensure_ascii=False,
    )


def compute_event_id(pubkey: str, created_at: int, kind: int, tags: List[List[str]], content: str) -> str:
    """Compute the hex content hash of an event."""
    serialized = serialize_event(pubkey, created_at, kind, tags, content)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


@dataclass
class Event:
    """A relay event or an unsigned rumor (``sig`` is None)."""

    kind: int
    content: str = ""
    tags: List[List[str]] = field(default_factory=list)
    created_at: int = 0
    pubkey: str = ""
    id: str = ""
    sig: Optional[str] = None

    def compute_id(self) -> str:
        return compute_event_id(self.pubkey, self.created_at, self.kind, self.tags, self.content)

    def with_id(self) -> "Event":
        """Return a copy with ``id`` recomputed from the other fields."""
        return replace(self, id=self.compute_id())

    def has_valid_id(self) -> bool:
        return bool(self.id) and self.id == self.compute_id()

    def get_tag_values(self, name: str) -> List[str]:
        """Return the first value of every tag called ``name``."""
        return [tag[1] for tag in self.tags if len(tag) > 1 and tag[0] == name]

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to a JSON-compatible dictionary."""
        data: Dict[str, Any] = {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": [list(tag) for tag in self.tags],
            "content": self.content,
        }
        if self.sig is not None:
            data["sig"] = self.sig
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Event":
        """Create an event from a dictionary.

        Raises:
            ValueError: If required fields are missing or mistyped
        """
        try:
            return Event(
                id=str(data.get("id", "")),
                pubkey=str(data["pubkey"]),
                created_at=int(data["created_at"]),
                kind=int(data["kind"]),
                tags=[[str(value) for value in tag] for tag in data.get("tags", [])],
                content=str(data.get("content", "")),
                sig=data.get("sig"),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed event: {e}") from e

    @staticmethod
    def from_json(raw: str) -> "Event":
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Event is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("Event JSON must be an object")
        return Event.from_dict(data)


def short_id(value: str, length: int = 10) -> str:
    """Shorten ids and keys for log lines."""
    return value[:length] + "..." if len(value) > length else value
