"""
Data types for the capture library.
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


# Item lifecycle states
STATUS_PROCESSING = "processing"
STATUS_QUEUED = "queued"
STATUS_READY = "ready"
STATUS_FAILED = "failed"

ITEM_STATUSES = frozenset({
    STATUS_PROCESSING, STATUS_QUEUED, STATUS_READY, STATUS_FAILED,
})

# Queued scan states
SCAN_PENDING = "pending"
SCAN_PROCESSING = "processing"

DEFAULT_CATEGORY = "Uncategorized"
DEFAULT_TITLE = "Captured item"
PLACEHOLDER_TITLE = "Processing capture…"
DEFAULT_COLLECTION_NAME = "My Library"
DEFAULT_COLLECTION_DESCRIPTION = "Default space for every capture."


def now_ms() -> int:
    """Current wall-clock time in integer epoch milliseconds.

    All timestamps in omnilens are stored this way.
    """
    return time.time_ns() // 1_000_000


def next_timestamp(previous: int) -> int:
    """Timestamp for a write that must sort strictly after ``previous``."""
    return max(now_ms(), previous + 1)


def new_id() -> str:
    """Opaque unique identifier for items, collections and queued scans."""
    return uuid.uuid4().hex


def format_ms(ts: int) -> str:
    """Format an epoch-ms timestamp as a local date-time string for display."""
    if not ts:
        return ""
    dt = datetime.fromtimestamp(ts / 1000, tz=timezone.utc)
    return dt.astimezone().strftime("%Y-%m-%d %H:%M")


def encode_list(values) -> str:
    """JSON-encode a string sequence for storage."""
    return json.dumps(list(values or []), ensure_ascii=False)


def decode_list(raw: Optional[str]) -> list[str]:
    """Decode a stored JSON array. Tolerates NULL and malformed values."""
    if not raw:
        return []
    try:
        values = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return []
    if not isinstance(values, list):
        return []
    return [str(v) for v in values if v is not None]


@dataclass
class Item:
    """
    One captured artifact.

    ``title``, ``notes`` and ``ocr_text`` are never None. ``collection_id``
    is None for unassigned items, which is a valid permanent state.
    """
    id: str
    image_uri: str
    created_at: int
    updated_at: int
    title: str = ""
    notes: str = ""
    ocr_text: str = ""
    category: str = DEFAULT_CATEGORY
    tags: list[str] = field(default_factory=list)
    identified_objects: list[str] = field(default_factory=list)
    collection_id: Optional[str] = None
    status: str = STATUS_PROCESSING

    @property
    def is_terminal(self) -> bool:
        return self.status in (STATUS_READY, STATUS_FAILED)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "image_uri": self.image_uri,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "title": self.title,
            "notes": self.notes,
            "ocr_text": self.ocr_text,
            "category": self.category,
            "tags": list(self.tags),
            "identified_objects": list(self.identified_objects),
            "collection_id": self.collection_id,
            "status": self.status,
        }


# Fields a caller may patch through ItemStore.update_item
ITEM_MUTABLE_FIELDS = frozenset({
    "image_uri", "title", "notes", "ocr_text", "category", "tags",
    "identified_objects", "collection_id", "status",
})

# Fields a user edit may touch (status is owned by the orchestrator)
ITEM_EDITABLE_FIELDS = frozenset({
    "title", "notes", "category", "tags", "collection_id",
})


@dataclass
class Collection:
    """A named grouping of items."""
    id: str
    name: str
    created_at: int
    updated_at: int
    description: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class QueuedScan:
    """A durable record of a capture awaiting (re)analysis."""
    id: str
    image_uri: str
    created_at: int
    status: str = SCAN_PENDING
    item_id: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    claimed_at: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "image_uri": self.image_uri,
            "created_at": self.created_at,
            "status": self.status,
            "item_id": self.item_id,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "claimed_at": self.claimed_at,
        }


@dataclass
class SearchFilters:
    """
    Structured search constraints.

    Every dimension left at its default imposes no constraint.
    ``unassigned`` selects items without a collection and takes precedence
    over ``collection_id``.
    """
    category: Optional[str] = None
    collection_id: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    unassigned: bool = False

    def is_active(self) -> bool:
        return bool(
            self.category
            or self.collection_id
            or self.unassigned
            or any(t.strip() for t in self.tags)
        )


@dataclass
class LibrarySnapshot:
    """Read-only view of the library handed to front ends after a mutation."""
    items: list[Item]
    collections: list[Collection]
    queued_scans: list[QueuedScan]
    default_collection_id: Optional[str]

    def to_dict(self) -> dict:
        return {
            "items": [i.to_dict() for i in self.items],
            "collections": [c.to_dict() for c in self.collections],
            "queued_scans": [q.to_dict() for q in self.queued_scans],
            "default_collection_id": self.default_collection_id,
        }
