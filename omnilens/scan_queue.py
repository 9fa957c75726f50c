"""
Queue of captures awaiting (re)analysis, using SQLite.

A queued scan is written when the analysis service could not be reached at
capture time, and removed once the capture has been enriched (or given up
on). Rows are durable: a scan queued before a crash is still listed after a
restart.

Claiming is a compare-and-set: a scan moves from 'pending' to 'processing'
only if it is still pending, inside a single IMMEDIATE transaction.
Concurrent reconciliation passes therefore cannot process the same scan
twice. Stale claims (a reconciler that died mid-flight) are recovered
automatically.

At most one scan may exist per item; a partial unique index enforces it.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .errors import DuplicateScanError
from .item_store import add_column, open_connection
from .types import SCAN_PENDING, SCAN_PROCESSING, QueuedScan, new_id, now_ms

logger = logging.getLogger(__name__)

# Claims older than this are considered stale (reconciler crashed)
STALE_CLAIM_SECONDS = 600  # 10 minutes

_SCAN_COLUMNS = (
    "id, image_uri, created_at, status, item_id, attempts, last_error, claimed_at"
)


def _row_to_scan(row: sqlite3.Row) -> QueuedScan:
    return QueuedScan(
        id=row["id"],
        image_uri=row["image_uri"],
        created_at=row["created_at"],
        status=row["status"] or SCAN_PENDING,
        item_id=row["item_id"],
        attempts=row["attempts"] or 0,
        last_error=row["last_error"],
        claimed_at=row["claimed_at"],
    )


class ScanQueue:
    """
    SQLite-backed queue of captures awaiting analysis.

    Scans are added by the capture orchestrator when the first analysis
    attempt fails, and drained by its reconciliation loop.
    """

    def __init__(self, db_path: Path, *, stale_claim_seconds: int = STALE_CLAIM_SECONDS):
        """
        Args:
            db_path: Path to SQLite database file (shared with the item store)
            stale_claim_seconds: Age after which a 'processing' claim is reclaimable
        """
        self._db_path = Path(db_path)
        self._stale_claim_seconds = stale_claim_seconds
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._conn = open_connection(self._db_path)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS queued_scans (
                id TEXT PRIMARY KEY NOT NULL,
                image_uri TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                status TEXT NOT NULL
            )
        """)

        # Migrate existing databases: add new columns if missing
        self._migrate()

        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_queued_scans_created
            ON queued_scans(created_at)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_queued_scans_status
            ON queued_scans(status)
        """)
        self._ensure_unique_item_index()

    def _migrate(self) -> None:
        """Add columns introduced after the first queue schema.

        Each step is additive and safe to repeat, including when another
        connection is running the same migration at the same moment.
        """
        add_column(self._conn, "queued_scans", "item_id", "TEXT")
        add_column(self._conn, "queued_scans", "attempts", "INTEGER NOT NULL DEFAULT 0")
        add_column(self._conn, "queued_scans", "last_error", "TEXT")
        add_column(self._conn, "queued_scans", "claimed_at", "INTEGER")

    def _ensure_unique_item_index(self) -> None:
        """One scan per item. Older databases may hold duplicates: keep the
        oldest scan for each item before creating the index."""
        exists = self._conn.execute("""
            SELECT 1 FROM sqlite_master
            WHERE type = 'index' AND name = 'idx_queued_scans_item'
        """).fetchone()
        if exists:
            return
        with self._transaction() as conn:
            cursor = conn.execute("""
                DELETE FROM queued_scans
                WHERE item_id IS NOT NULL
                  AND rowid NOT IN (
                      SELECT MIN(rowid) FROM queued_scans
                      WHERE item_id IS NOT NULL
                      GROUP BY item_id
                  )
            """)
            if cursor.rowcount:
                logger.warning("Removed %d duplicate queued scans", cursor.rowcount)
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_queued_scans_item
                ON queued_scans(item_id) WHERE item_id IS NOT NULL
            """)

    @property
    def stale_claim_seconds(self) -> int:
        return self._stale_claim_seconds

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def enqueue(self, image_uri: str, item_id: Optional[str]) -> QueuedScan:
        """
        Add a scan to the queue in 'pending' state.

        Raises:
            DuplicateScanError: a scan already exists for item_id
        """
        scan = QueuedScan(
            id=new_id(),
            image_uri=image_uri,
            created_at=now_ms(),
            status=SCAN_PENDING,
            item_id=item_id,
        )
        try:
            with self._transaction() as conn:
                conn.execute(f"""
                    INSERT INTO queued_scans ({_SCAN_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, 0, NULL, NULL)
                """, (scan.id, scan.image_uri, scan.created_at, scan.status, scan.item_id))
        except sqlite3.IntegrityError as e:
            raise DuplicateScanError(
                f"A queued scan already exists for item {item_id}"
            ) from e
        logger.info("Queued scan %s for item %s", scan.id, item_id)
        return scan

    def mark_processing(self, id: str) -> bool:
        """
        Claim a pending scan for processing (compare-and-set).

        Returns True only for the caller that moved the scan from 'pending'
        to 'processing'. A scan that is already processing, or gone, is left
        untouched and False is returned.
        """
        with self._transaction() as conn:
            cursor = conn.execute("""
                UPDATE queued_scans
                SET status = ?, claimed_at = ?, attempts = attempts + 1
                WHERE id = ? AND status = ?
            """, (SCAN_PROCESSING, now_ms(), id, SCAN_PENDING))
        return cursor.rowcount == 1

    def release(self, id: str, error: Optional[str] = None) -> bool:
        """
        Return a claimed scan to 'pending' so the next pass retries it.

        The attempt counter (incremented by mark_processing) is preserved
        and the error message is stored for diagnosis.
        """
        with self._transaction() as conn:
            cursor = conn.execute("""
                UPDATE queued_scans
                SET status = ?, claimed_at = NULL, last_error = ?
                WHERE id = ?
            """, (SCAN_PENDING, error, id))
        return cursor.rowcount > 0

    def remove(self, id: str) -> bool:
        """Remove a scan. Returns True if it existed."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM queued_scans WHERE id = ?", (id,))
        return cursor.rowcount > 0

    def remove_for_item(self, item_id: str) -> int:
        """Remove any scan referencing item_id. Returns count removed."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM queued_scans WHERE item_id = ?", (item_id,)
            )
        return cursor.rowcount

    def attach_item(self, id: str, item_id: str) -> bool:
        """Point a scan that has no item at the item created for it."""
        try:
            with self._transaction() as conn:
                cursor = conn.execute("""
                    UPDATE queued_scans SET item_id = ?
                    WHERE id = ? AND item_id IS NULL
                """, (item_id, id))
        except sqlite3.IntegrityError as e:
            raise DuplicateScanError(
                f"A queued scan already exists for item {item_id}"
            ) from e
        return cursor.rowcount > 0

    def recover_stale_claims(self, *, all_claims: bool = False) -> int:
        """Reset scans claimed by crashed reconcilers back to pending.

        Scans stuck in 'processing' longer than stale_claim_seconds are
        assumed to be from a dead reconciler. With ``all_claims`` every
        claim is reset, which is only safe when no other process can be
        reconciling this store.

        Returns count of recovered scans.
        """
        cutoff = now_ms() - self._stale_claim_seconds * 1000
        with self._transaction() as conn:
            if all_claims:
                cursor = conn.execute("""
                    UPDATE queued_scans
                    SET status = ?, claimed_at = NULL
                    WHERE status = ?
                """, (SCAN_PENDING, SCAN_PROCESSING))
            else:
                cursor = conn.execute("""
                    UPDATE queued_scans
                    SET status = ?, claimed_at = NULL
                    WHERE status = ?
                      AND (claimed_at IS NULL OR claimed_at <= ?)
                """, (SCAN_PENDING, SCAN_PROCESSING, cutoff))
        recovered = cursor.rowcount
        if recovered:
            logger.info("Recovered %d stale scan claims", recovered)
        return recovered

    def clear(self) -> int:
        """Remove every scan. Returns count of scans cleared."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM queued_scans")
        return cursor.rowcount

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, id: str) -> Optional[QueuedScan]:
        """Get a scan by id, or None."""
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_SCAN_COLUMNS} FROM queued_scans WHERE id = ?", (id,)
            ).fetchone()
        return _row_to_scan(row) if row else None

    def find_by_item(self, item_id: str) -> Optional[QueuedScan]:
        """The scan referencing item_id, or None."""
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_SCAN_COLUMNS} FROM queued_scans WHERE item_id = ?",
                (item_id,),
            ).fetchone()
        return _row_to_scan(row) if row else None

    def list_pending(self) -> list[QueuedScan]:
        """Pending scans, oldest first."""
        with self._lock:
            rows = self._conn.execute(f"""
                SELECT {_SCAN_COLUMNS} FROM queued_scans
                WHERE status = ?
                ORDER BY created_at ASC, rowid ASC
            """, (SCAN_PENDING,)).fetchall()
        return [_row_to_scan(r) for r in rows]

    def list_all(self) -> list[QueuedScan]:
        """Every scan regardless of status, oldest first."""
        with self._lock:
            rows = self._conn.execute(f"""
                SELECT {_SCAN_COLUMNS} FROM queued_scans
                ORDER BY created_at ASC, rowid ASC
            """).fetchall()
        return [_row_to_scan(r) for r in rows]

    def count(self) -> int:
        """Get count of pending scans (excludes processing)."""
        with self._lock:
            return self._conn.execute(
                "SELECT COUNT(*) FROM queued_scans WHERE status = ?",
                (SCAN_PENDING,),
            ).fetchone()[0]

    def stats(self) -> dict:
        """Get queue statistics including status breakdown."""
        with self._lock:
            by_status = {
                row[0]: row[1]
                for row in self._conn.execute(
                    "SELECT status, COUNT(*) FROM queued_scans GROUP BY status"
                )
            }
            row = self._conn.execute("""
                SELECT COUNT(*), MAX(attempts), MIN(created_at)
                FROM queued_scans
            """).fetchone()
        return {
            "pending": by_status.get(SCAN_PENDING, 0),
            "processing": by_status.get(SCAN_PROCESSING, 0),
            "total": row[0],
            "max_attempts": row[1] or 0,
            "oldest": row[2],
            "queue_path": str(self._db_path),
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

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
        """Ensure connection is closed on garbage collection."""
        self.close()
