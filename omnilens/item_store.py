"""
Item and collection store using SQLite.

The item store is the source of truth for:
- Item identity, enrichment fields and lifecycle status
- Collections and item membership
- Search over title, notes, OCR text, category and tags

All writes run inside a single ``BEGIN IMMEDIATE`` transaction while holding
the store's writer lock, so a read-merge-write on one item can never
interleave with another write (within this process or across processes).
Network calls never happen while the lock is held.

The queue of scans awaiting analysis lives in the same database file but is
managed by :class:`omnilens.scan_queue.ScanQueue`.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .errors import NotFoundError, ValidationError
from .types import (
    DEFAULT_CATEGORY,
    ITEM_MUTABLE_FIELDS,
    ITEM_STATUSES,
    STATUS_PROCESSING,
    Collection,
    Item,
    SearchFilters,
    decode_list,
    encode_list,
    new_id,
    next_timestamp,
    now_ms,
)

logger = logging.getLogger(__name__)

_UNSET = object()

_ITEM_COLUMNS = (
    "id, image_uri, created_at, updated_at, title, notes, ocr_text, "
    "category, tags, identified_objects, collection_id, status"
)


def add_column(conn: sqlite3.Connection, table: str, column: str, decl: str) -> bool:
    """Add a column if it is missing. Returns True if this call added it.

    Tolerates "duplicate column name" so that two connections migrating the
    same file at once both succeed.
    """
    columns = {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
    if column in columns:
        return False
    try:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")
    except sqlite3.OperationalError as e:
        if "duplicate column name" in str(e).lower():
            return False
        raise
    logger.info("Migrated %s: added column %s", table, column)
    return True


def open_connection(db_path: Path) -> sqlite3.Connection:
    """Open a connection configured the way every omnilens table expects."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    # isolation_level=None gives us manual transaction control
    # so we can use BEGIN IMMEDIATE for atomic read-modify-write
    conn = sqlite3.connect(
        str(db_path), check_same_thread=False, isolation_level=None,
    )
    conn.row_factory = sqlite3.Row
    # Enable WAL mode for better concurrent access across connections
    conn.execute("PRAGMA journal_mode=WAL")
    # Wait up to 5 seconds for locks instead of failing immediately
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


def _row_to_item(row: sqlite3.Row) -> Item:
    return Item(
        id=row["id"],
        image_uri=row["image_uri"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        title=row["title"] or "",
        notes=row["notes"] or "",
        ocr_text=row["ocr_text"] or "",
        category=row["category"] or DEFAULT_CATEGORY,
        tags=decode_list(row["tags"]),
        identified_objects=decode_list(row["identified_objects"]),
        collection_id=row["collection_id"],
        status=row["status"],
    )


def _row_to_collection(row: sqlite3.Row) -> Collection:
    return Collection(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _text_matches(item: Item, needle: str) -> bool:
    """Case-insensitive substring match over title, notes and OCR text."""
    haystack = "\n".join((item.title, item.notes, item.ocr_text))
    return needle.casefold() in haystack.casefold()


def _tags_match(item: Item, wanted: list[str]) -> bool:
    """Every wanted tag must substring-match some value in {category} ∪ tags."""
    values = [item.category.casefold()] + [t.casefold() for t in item.tags]
    for tag in wanted:
        needle = tag.casefold()
        if not any(needle in v for v in values):
            return False
    return True


class ItemStore:
    """
    SQLite-backed store for items and collections.

    Returned objects are detached copies. Callers must use the value a write
    returns (or re-read) rather than trusting anything they cached earlier.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._conn = open_connection(self._db_path)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS collections (
                id TEXT PRIMARY KEY NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS items (
                id TEXT PRIMARY KEY NOT NULL,
                image_uri TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                title TEXT,
                notes TEXT,
                ocr_text TEXT,
                category TEXT,
                tags TEXT,
                identified_objects TEXT,
                collection_id TEXT,
                status TEXT NOT NULL,
                FOREIGN KEY(collection_id) REFERENCES collections(id)
            )
        """)

        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_items_created
            ON items(created_at)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_items_collection
            ON items(collection_id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_items_status
            ON items(status)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_collections_name
            ON collections(name)
        """)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize a write: writer lock + BEGIN IMMEDIATE, commit or roll back."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise

    def _fetch_item(self, conn: sqlite3.Connection, id: str) -> Optional[Item]:
        row = conn.execute(
            f"SELECT {_ITEM_COLUMNS} FROM items WHERE id = ?", (id,)
        ).fetchone()
        return _row_to_item(row) if row else None

    def _check_collection(self, conn: sqlite3.Connection, collection_id: Optional[str]) -> None:
        if collection_id is None:
            return
        row = conn.execute(
            "SELECT 1 FROM collections WHERE id = ?", (collection_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Collection not found: {collection_id}")

    # -------------------------------------------------------------------------
    # Item writes
    # -------------------------------------------------------------------------

    def create_item(
        self,
        image_uri: str,
        *,
        title: str = "",
        notes: str = "",
        ocr_text: str = "",
        category: str = DEFAULT_CATEGORY,
        tags=(),
        identified_objects=(),
        collection_id: Optional[str] = None,
        status: str = STATUS_PROCESSING,
    ) -> Item:
        """
        Insert a new item with a fresh id.

        Raises:
            NotFoundError: collection_id names a missing collection
            ValueError: unknown status
        """
        if status not in ITEM_STATUSES:
            raise ValueError(f"Unknown item status: {status!r}")
        now = now_ms()
        item = Item(
            id=new_id(),
            image_uri=image_uri,
            created_at=now,
            updated_at=now,
            title=title or "",
            notes=notes or "",
            ocr_text=ocr_text or "",
            category=category or DEFAULT_CATEGORY,
            tags=list(tags or []),
            identified_objects=list(identified_objects or []),
            collection_id=collection_id,
            status=status,
        )
        with self._transaction() as conn:
            self._check_collection(conn, collection_id)
            conn.execute(f"""
                INSERT INTO items ({_ITEM_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                item.id, item.image_uri, item.created_at, item.updated_at,
                item.title, item.notes, item.ocr_text, item.category,
                encode_list(item.tags), encode_list(item.identified_objects),
                item.collection_id, item.status,
            ))
        return item

    def update_item(self, id: str, **patch) -> Item:
        """
        Merge ``patch`` into an existing item and return the stored result.

        ``updated_at`` always moves strictly forward. ``id`` and
        ``created_at`` cannot be patched.

        Raises:
            NotFoundError: no such item, or collection_id names a missing collection
            ValueError: unknown field or status
        """
        unknown = set(patch) - ITEM_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update item fields: {', '.join(sorted(unknown))}")
        if "status" in patch and patch["status"] not in ITEM_STATUSES:
            raise ValueError(f"Unknown item status: {patch['status']!r}")

        with self._transaction() as conn:
            existing = self._fetch_item(conn, id)
            if existing is None:
                raise NotFoundError(f"Item not found: {id}")
            if "collection_id" in patch:
                self._check_collection(conn, patch["collection_id"])

            merged = Item(**{**existing.to_dict(), **patch})
            merged.title = merged.title or ""
            merged.notes = merged.notes or ""
            merged.ocr_text = merged.ocr_text or ""
            merged.category = merged.category or DEFAULT_CATEGORY
            merged.tags = list(merged.tags or [])
            merged.identified_objects = list(merged.identified_objects or [])
            merged.updated_at = next_timestamp(existing.updated_at)

            conn.execute("""
                UPDATE items
                SET image_uri = ?, updated_at = ?, title = ?, notes = ?,
                    ocr_text = ?, category = ?, tags = ?, identified_objects = ?,
                    collection_id = ?, status = ?
                WHERE id = ?
            """, (
                merged.image_uri, merged.updated_at, merged.title, merged.notes,
                merged.ocr_text, merged.category, encode_list(merged.tags),
                encode_list(merged.identified_objects), merged.collection_id,
                merged.status, id,
            ))
        return merged

    def delete_item(self, id: str) -> bool:
        """
        Delete an item.

        Returns:
            True if the item existed and was deleted
        """
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM items WHERE id = ?", (id,))
        return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Item reads
    # -------------------------------------------------------------------------

    def get_item(self, id: str) -> Optional[Item]:
        """Get an item by id, or None."""
        with self._lock:
            return self._fetch_item(self._conn, id)

    def require_item(self, id: str) -> Item:
        """Get an item by id, raising NotFoundError if it is missing."""
        item = self.get_item(id)
        if item is None:
            raise NotFoundError(f"Item not found: {id}")
        return item

    def list_items(self) -> list[Item]:
        """All items, newest first."""
        with self._lock:
            rows = self._conn.execute(f"""
                SELECT {_ITEM_COLUMNS} FROM items
                ORDER BY created_at DESC, rowid DESC
            """).fetchall()
        return [_row_to_item(r) for r in rows]

    def list_items_by_status(self, status: str) -> list[Item]:
        """Items in one lifecycle state, oldest first."""
        with self._lock:
            rows = self._conn.execute(f"""
                SELECT {_ITEM_COLUMNS} FROM items
                WHERE status = ?
                ORDER BY created_at ASC, rowid ASC
            """, (status,)).fetchall()
        return [_row_to_item(r) for r in rows]

    def search_items(
        self,
        query: str = "",
        filters: Optional[SearchFilters] = None,
    ) -> list[Item]:
        """
        Search items by free text and structured filters.

        Category and collection are exact matches done in SQL. Free text and
        tags are matched case-insensitively in Python so that non-ASCII text
        folds correctly:
        - query: substring of title + notes + OCR text
        - tags: each requested tag must be a substring of the category or of
          at least one of the item's tags

        Args:
            query: Free text; empty means no text constraint
            filters: Structured constraints; None means none

        Returns:
            Matching items, newest first
        """
        filters = filters or SearchFilters()
        clauses: list[str] = []
        params: list = []

        if filters.category:
            clauses.append("category = ?")
            params.append(filters.category)
        if filters.unassigned:
            clauses.append("collection_id IS NULL")
        elif filters.collection_id:
            clauses.append("collection_id = ?")
            params.append(filters.collection_id)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self._conn.execute(f"""
                SELECT {_ITEM_COLUMNS} FROM items
                {where}
                ORDER BY created_at DESC, rowid DESC
            """, params).fetchall()
        items = [_row_to_item(r) for r in rows]

        if query:
            items = [i for i in items if _text_matches(i, query)]
        wanted = [t.strip() for t in filters.tags if t and t.strip()]
        if wanted:
            items = [i for i in items if _tags_match(i, wanted)]
        return items

    def count_items(self) -> int:
        """Count all items."""
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM items").fetchone()[0]

    def status_counts(self) -> dict[str, int]:
        """Item counts keyed by status (every status present, zero if unused)."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) FROM items GROUP BY status"
            ).fetchall()
        counts = {status: 0 for status in sorted(ITEM_STATUSES)}
        for row in rows:
            counts[row[0]] = row[1]
        return counts

    # -------------------------------------------------------------------------
    # Collections
    # -------------------------------------------------------------------------

    def create_collection(self, name: str, description: Optional[str] = None) -> Collection:
        """
        Create a collection.

        Raises:
            ValidationError: name is empty
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Collection name must not be empty")
        now = now_ms()
        collection = Collection(
            id=new_id(), name=name, description=description,
            created_at=now, updated_at=now,
        )
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO collections (id, name, description, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """, (collection.id, name, description, now, now))
        return collection

    def get_collection(self, id: str) -> Optional[Collection]:
        """Get a collection by id, or None."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM collections WHERE id = ?", (id,)
            ).fetchone()
        return _row_to_collection(row) if row else None

    def find_collection_by_name(self, name: str) -> Optional[Collection]:
        """Oldest collection with exactly this name, or None."""
        with self._lock:
            row = self._conn.execute("""
                SELECT * FROM collections WHERE name = ?
                ORDER BY created_at ASC, rowid ASC LIMIT 1
            """, (name,)).fetchone()
        return _row_to_collection(row) if row else None

    def list_collections(self) -> list[Collection]:
        """All collections, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM collections ORDER BY created_at ASC, rowid ASC"
            ).fetchall()
        return [_row_to_collection(r) for r in rows]

    def ensure_default_collection(
        self,
        name: str,
        description: Optional[str] = None,
    ) -> Collection:
        """
        Return the collection holding the reserved default name, creating it
        if absent. Check and insert share one transaction, so concurrent
        callers still end up with exactly one row.
        """
        with self._transaction() as conn:
            row = conn.execute("""
                SELECT * FROM collections WHERE name = ?
                ORDER BY created_at ASC, rowid ASC LIMIT 1
            """, (name,)).fetchone()
            if row is not None:
                return _row_to_collection(row)
            now = now_ms()
            collection = Collection(
                id=new_id(), name=name, description=description,
                created_at=now, updated_at=now,
            )
            conn.execute("""
                INSERT INTO collections (id, name, description, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """, (collection.id, name, description, now, now))
        logger.info("Created default collection %r (%s)", name, collection.id)
        return collection

    def update_collection(
        self,
        id: str,
        *,
        name=_UNSET,
        description=_UNSET,
    ) -> Collection:
        """
        Update a collection's name and/or description.

        Raises:
            NotFoundError: no such collection
            ValidationError: name is empty
        """
        if name is not _UNSET:
            name = (name or "").strip()
            if not name:
                raise ValidationError("Collection name must not be empty")
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM collections WHERE id = ?", (id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Collection not found: {id}")
            existing = _row_to_collection(row)
            if name is not _UNSET:
                existing.name = name
            if description is not _UNSET:
                existing.description = description
            existing.updated_at = next_timestamp(existing.updated_at)
            conn.execute("""
                UPDATE collections SET name = ?, description = ?, updated_at = ?
                WHERE id = ?
            """, (existing.name, existing.description, existing.updated_at, id))
        return existing

    def delete_collection(self, id: str) -> int:
        """
        Delete a collection, unassigning its items in the same transaction.

        Items are never deleted along with their collection.

        Returns:
            Number of items that were unassigned

        Raises:
            NotFoundError: no such collection
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT 1 FROM collections WHERE id = ?", (id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Collection not found: {id}")
            cursor = conn.execute("""
                UPDATE items
                SET collection_id = NULL, updated_at = MAX(?, updated_at + 1)
                WHERE collection_id = ?
            """, (now_ms(), id))
            unassigned = cursor.rowcount
            conn.execute("DELETE FROM collections WHERE id = ?", (id,))
        logger.info("Deleted collection %s (%d items unassigned)", id, unassigned)
        return unassigned

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
