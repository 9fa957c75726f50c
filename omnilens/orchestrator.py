"""
Capture orchestration: the lifecycle of every item.

An item moves through these states:

    (none) --capture--> processing --analysis ok--> ready
                            | retryable failure       ^
                            v                         | reconcile succeeds
                         queued ----------------------+
                            | non-retryable failure, or max_attempts reached
                            v
                         failed (terminal)

The orchestrator is the only component that changes an item's status. It
talks to the store, the scan queue, the analysis client and the asset stager
through their public interfaces, and never holds a store lock across a
network call.
"""

import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable

from .analysis import AnalysisClient, DemoAnalysisClient
from .errors import (
    AnalysisError,
    CaptureFailedError,
    DuplicateScanError,
    InconsistencyError,
    NotFoundError,
    OmnilensError,
    StagingError,
    ValidationError,
)
from .item_store import ItemStore
from .scan_queue import ScanQueue
from .search import SearchEngine
from .staging import AssetStager, uri_to_path
from .types import (
    DEFAULT_COLLECTION_DESCRIPTION,
    DEFAULT_COLLECTION_NAME,
    ITEM_EDITABLE_FIELDS,
    PLACEHOLDER_TITLE,
    STATUS_FAILED,
    STATUS_PROCESSING,
    STATUS_QUEUED,
    STATUS_READY,
    Collection,
    Item,
    LibrarySnapshot,
    QueuedScan,
    SearchFilters,
    now_ms,
)

logger = logging.getLogger(__name__)

# Sentinel for add_capture: file the item in the default collection
DEFAULT_COLLECTION = object()

DEFAULT_WORKERS = 4


@dataclass
class ReconcileReport:
    """Outcome of one reconciliation pass."""
    ready: int = 0
    retried: int = 0
    failed: int = 0
    dropped: int = 0
    lost_claims: int = 0
    skipped: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.ready + self.retried + self.failed + self.dropped

    def to_dict(self) -> dict:
        return {
            "ready": self.ready,
            "retried": self.retried,
            "failed": self.failed,
            "dropped": self.dropped,
            "lost_claims": self.lost_claims,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


@dataclass
class RecoveryReport:
    """Repairs made by the startup consistency check."""
    stale_claims: int = 0
    requeued: int = 0
    orphan_scans_removed: int = 0
    adopted_scans: int = 0

    @property
    def repaired(self) -> int:
        return self.requeued + self.orphan_scans_removed + self.adopted_scans

    def to_dict(self) -> dict:
        return {
            "stale_claims": self.stale_claims,
            "requeued": self.requeued,
            "orphan_scans_removed": self.orphan_scans_removed,
            "adopted_scans": self.adopted_scans,
        }


@runtime_checkable
class CaptureOrchestrator(Protocol):
    """Operations a front end performs on the library."""

    @property
    def default_collection_id(self) -> str: ...

    def add_capture(self, image_uri: str, collection_id=DEFAULT_COLLECTION) -> Item: ...

    def edit_item(self, id: str, **changes) -> Item: ...

    def remove_item(self, id: str) -> bool: ...

    def add_collection(self, name: str, description: Optional[str] = None) -> Collection: ...

    def edit_collection(self, id: str, **changes) -> Collection: ...

    def remove_collection(self, id: str) -> int: ...

    def run_search(self, query: str = "", filters: Optional[SearchFilters] = None) -> list[Item]: ...

    def snapshot(self) -> LibrarySnapshot: ...

    def reconcile(self) -> ReconcileReport: ...

    def recover(self) -> RecoveryReport: ...

    def close(self) -> None: ...


class LibraryOrchestrator:
    """
    Coordinates capture, enrichment, queueing and reconciliation.

    Args:
        store: Item and collection store
        queue: Scan queue (same database as the store)
        client: Analysis client
        stager: Copies raw captures into managed storage
        default_collection_name: Reserved name of the protected collection
        workers: Size of the reconciliation worker pool
        max_attempts: Give up on a scan after this many attempts (0 = never)
    """

    mode = "live"

    def __init__(
        self,
        store: ItemStore,
        queue: ScanQueue,
        client: AnalysisClient,
        stager: AssetStager,
        *,
        default_collection_name: str = DEFAULT_COLLECTION_NAME,
        workers: int = DEFAULT_WORKERS,
        max_attempts: int = 0,
    ):
        self._store = store
        self._queue = queue
        self._client = client
        self._stager = stager
        self._search = SearchEngine(store)
        self._default_name = default_collection_name
        self._workers = max(1, workers)
        self._max_attempts = max(0, max_attempts)

        # Guard against overlapping reconciliation passes
        self._reconcile_lock = threading.Lock()

        default = store.ensure_default_collection(
            default_collection_name, DEFAULT_COLLECTION_DESCRIPTION,
        )
        self._default_collection_id = default.id

    @property
    def default_collection_id(self) -> str:
        return self._default_collection_id

    @property
    def store(self) -> ItemStore:
        return self._store

    @property
    def queue(self) -> ScanQueue:
        return self._queue

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

    def add_capture(self, image_uri: str, collection_id=DEFAULT_COLLECTION) -> Item:
        """
        Capture an image and try to enrich it right away.

        Args:
            image_uri: Path or file:// URI of the raw capture
            collection_id: Target collection; omitted means the default
                collection, None means unassigned

        Returns:
            The stored item: 'ready', 'queued' or 'failed'

        Raises:
            NotFoundError: collection_id names a missing collection
            CaptureFailedError: staging or persistence failed (nothing kept)
        """
        if collection_id is DEFAULT_COLLECTION:
            collection_id = self._default_collection_id
        if collection_id is not None and self._store.get_collection(collection_id) is None:
            raise NotFoundError(f"Collection not found: {collection_id}")

        try:
            managed_uri = self._stager.stage(image_uri)
        except StagingError as e:
            raise CaptureFailedError(f"Could not save capture {image_uri}: {e}") from e

        try:
            placeholder = self._store.create_item(
                managed_uri,
                title=PLACEHOLDER_TITLE,
                collection_id=collection_id,
                status=STATUS_PROCESSING,
            )
        except (sqlite3.Error, OmnilensError) as e:
            _discard_staged(managed_uri)
            raise CaptureFailedError(f"Could not save capture {image_uri}: {e}") from e

        logger.info("Captured %s as item %s", image_uri, placeholder.id)
        return self._first_analysis(placeholder)

    def _first_analysis(self, item: Item) -> Item:
        """Analyze a new placeholder once, synchronously."""
        try:
            result = self._client.analyze(item.image_uri)
        except AnalysisError as e:
            if not e.retryable:
                logger.warning("Analysis of %s failed permanently: %s", item.id, e)
                return self._finish_capture(item, status=STATUS_FAILED)
            logger.warning("Analysis of %s failed, queuing for later: %s", item.id, e)
            return self._queue_for_retry(item)

        return self._finish_capture(item, status=STATUS_READY, **result.item_fields())

    def _queue_for_retry(self, item: Item) -> Item:
        """Enqueue a scan and mark the item queued, or undo the capture."""
        try:
            self._queue.enqueue(item.image_uri, item.id)
        except DuplicateScanError:
            # Another process's recovery queued it while we were analyzing
            logger.info("Item %s already has a queued scan", item.id)
        except sqlite3.Error as e:
            self._abandon_capture(item)
            raise CaptureFailedError(f"Could not queue capture {item.id}: {e}") from e
        return self._finish_capture(item, status=STATUS_QUEUED)

    def _finish_capture(self, item: Item, **patch) -> Item:
        """Store the outcome of the first analysis, or undo the capture."""
        try:
            return self._store.update_item(item.id, **patch)
        except (sqlite3.Error, OmnilensError) as e:
            self._abandon_capture(item)
            raise CaptureFailedError(f"Could not save capture {item.id}: {e}") from e

    def _abandon_capture(self, item: Item) -> None:
        """Remove a placeholder, its scan and its staged file."""
        try:
            self._queue.remove_for_item(item.id)
            self._store.delete_item(item.id)
        except sqlite3.Error as e:
            # Startup recovery re-queues the placeholder, so keep its image
            logger.warning("Could not remove abandoned item %s: %s", item.id, e)
            return
        _discard_staged(item.image_uri)

    # -------------------------------------------------------------------------
    # Items
    # -------------------------------------------------------------------------

    def edit_item(self, id: str, **changes) -> Item:
        """
        Apply a user edit. Status is never changed by an edit.

        Raises:
            ValidationError: a field that users cannot edit
            NotFoundError: no such item or collection
        """
        forbidden = set(changes) - ITEM_EDITABLE_FIELDS
        if forbidden:
            raise ValidationError(
                f"Cannot edit item fields: {', '.join(sorted(forbidden))}"
            )
        if "tags" in changes:
            changes["tags"] = [t.strip() for t in changes["tags"] or [] if t and t.strip()]
        return self._store.update_item(id, **changes)

    def remove_item(self, id: str) -> bool:
        """Delete an item and any queued scan for it."""
        self._queue.remove_for_item(id)
        removed = self._store.delete_item(id)
        if removed:
            logger.info("Removed item %s", id)
        return removed

    # -------------------------------------------------------------------------
    # Collections
    # -------------------------------------------------------------------------

    def _is_reserved(self, name: Optional[str]) -> bool:
        return (name or "").strip() == self._default_name

    def add_collection(self, name: str, description: Optional[str] = None) -> Collection:
        """Create a collection. The default collection's name is reserved."""
        if self._is_reserved(name):
            raise ValidationError(f"'{self._default_name}' is reserved for the default collection")
        return self._store.create_collection(name, description)

    def edit_collection(self, id: str, **changes) -> Collection:
        """
        Rename or re-describe a collection.

        The default collection keeps its name, and no other collection may
        take it.
        """
        unknown = set(changes) - {"name", "description"}
        if unknown:
            raise ValidationError(
                f"Cannot edit collection fields: {', '.join(sorted(unknown))}"
            )
        if "name" in changes:
            if id == self._default_collection_id:
                if not self._is_reserved(changes["name"]):
                    raise ValidationError("The default collection cannot be renamed")
            elif self._is_reserved(changes["name"]):
                raise ValidationError(
                    f"'{self._default_name}' is reserved for the default collection"
                )
        return self._store.update_collection(id, **changes)

    def remove_collection(self, id: str) -> int:
        """
        Delete a collection; its items become unassigned.

        Returns:
            Number of items unassigned

        Raises:
            ValidationError: id is the default collection
            NotFoundError: no such collection
        """
        if id == self._default_collection_id:
            raise ValidationError("The default collection cannot be deleted")
        return self._store.delete_collection(id)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def run_search(self, query: str = "", filters: Optional[SearchFilters] = None) -> list[Item]:
        return self._search.run(query, filters)

    def snapshot(self) -> LibrarySnapshot:
        """Current items, collections and queued scans."""
        return LibrarySnapshot(
            items=self._store.list_items(),
            collections=self._store.list_collections(),
            queued_scans=self._queue.list_all(),
            default_collection_id=self._default_collection_id,
        )

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    def reconcile(self) -> ReconcileReport:
        """
        Drain the scan queue once.

        Each pending scan is claimed with a compare-and-set before it is
        analyzed, so a scan is never processed by two passes. A failure on
        one scan is recorded and the pass moves on.

        Returns:
            ReconcileReport; ``skipped`` is True if another pass was running
        """
        if not self._reconcile_lock.acquire(blocking=False):
            logger.info("Reconciliation already in progress, skipping")
            return ReconcileReport(skipped=True)
        try:
            self._queue.recover_stale_claims()
            pending = self._queue.list_pending()
            report = ReconcileReport()
            if not pending:
                return report

            logger.info("Reconciling %d queued scans", len(pending))
            with ThreadPoolExecutor(
                max_workers=min(self._workers, len(pending)),
                thread_name_prefix="omnilens-reconcile",
            ) as pool:
                outcomes = list(pool.map(self._reconcile_scan, pending))

            for scan, (outcome, error) in zip(pending, outcomes):
                if outcome == "lost":
                    report.lost_claims += 1
                    continue
                setattr(report, outcome, getattr(report, outcome) + 1)
                if error:
                    report.errors.append(f"{scan.item_id or scan.id}: {error}")
            logger.info(
                "Reconcile done: %d ready, %d retried, %d failed, %d dropped",
                report.ready, report.retried, report.failed, report.dropped,
            )
            return report
        finally:
            self._reconcile_lock.release()

    def _reconcile_scan(self, scan: QueuedScan) -> tuple[str, Optional[str]]:
        """Process one scan. Returns (outcome, error message)."""
        try:
            if not self._queue.mark_processing(scan.id):
                return "lost", None
            attempts = scan.attempts + 1
            return self._process_claimed(scan, attempts)
        except (sqlite3.Error, OmnilensError) as e:
            # Leave the scan for the next pass
            error = f"{type(e).__name__}: {e}"
            logger.warning("Reconcile of scan %s failed: %s", scan.id, e)
            try:
                self._queue.release(scan.id, error)
            except sqlite3.Error as release_error:
                # Claim stays until recover_stale_claims resets it
                logger.warning("Could not release scan %s: %s", scan.id, release_error)
            return "retried", error

    def _process_claimed(self, scan: QueuedScan, attempts: int) -> tuple[str, Optional[str]]:
        item_id = scan.item_id
        if item_id is None:
            raise InconsistencyError(f"Queued scan {scan.id} has no item")
        item = self._store.get_item(item_id)
        if item is None:
            logger.info("Dropping scan %s: item %s no longer exists", scan.id, item_id)
            self._queue.remove(scan.id)
            return "dropped", None
        if item.is_terminal:
            logger.info("Dropping scan %s: item %s is already %s", scan.id, item_id, item.status)
            self._queue.remove(scan.id)
            return "dropped", None

        try:
            result = self._client.analyze(scan.image_uri)
        except AnalysisError as e:
            error = f"{type(e).__name__}: {e}"
            if not e.retryable:
                logger.warning("Giving up on item %s: %s", item_id, e)
                return self._give_up(scan, item_id, error)
            if self._max_attempts and attempts >= self._max_attempts:
                logger.warning(
                    "Giving up on item %s after %d attempts: %s", item_id, attempts, e
                )
                return self._give_up(scan, item_id, error)
            logger.info("Analysis of item %s failed (attempt %d): %s", item_id, attempts, e)
            self._queue.release(scan.id, error)
            return "retried", error

        try:
            self._store.update_item(item_id, status=STATUS_READY, **result.item_fields())
        except NotFoundError:
            # Deleted while the analysis was in flight
            self._queue.remove(scan.id)
            return "dropped", None
        self._queue.remove(scan.id)
        logger.info("Item %s enriched after %d attempts", item_id, attempts)
        return "ready", None

    def _give_up(self, scan: QueuedScan, item_id: str, error: str) -> tuple[str, Optional[str]]:
        try:
            self._store.update_item(item_id, status=STATUS_FAILED)
        except NotFoundError:
            self._queue.remove(scan.id)
            return "dropped", None
        self._queue.remove(scan.id)
        return "failed", error

    # -------------------------------------------------------------------------
    # Startup recovery
    # -------------------------------------------------------------------------

    def recover(self) -> RecoveryReport:
        """
        Repair state left behind by an interrupted process.

        Other processes may share the store, so only work older than the
        queue's stale_claim_seconds is treated as abandoned.

        - stale claims are reset to pending
        - an item stuck in 'processing' (stale) or 'queued' with no scan is
          re-queued
        - a scan whose item no longer exists is removed
        - a scan with no item gets a queued item created for it
        """
        report = RecoveryReport()
        report.stale_claims = self._queue.recover_stale_claims()
        cutoff = now_ms() - self._queue.stale_claim_seconds * 1000

        for scan in self._queue.list_all():
            if scan.item_id is None:
                item = self._store.create_item(
                    scan.image_uri,
                    title=PLACEHOLDER_TITLE,
                    collection_id=None,
                    status=STATUS_QUEUED,
                )
                self._queue.attach_item(scan.id, item.id)
                logger.warning("Created item %s for queued scan %s", item.id, scan.id)
                report.adopted_scans += 1
            elif self._store.get_item(scan.item_id) is None:
                self._queue.remove(scan.id)
                logger.warning(
                    "Removed queued scan %s for missing item %s", scan.id, scan.item_id
                )
                report.orphan_scans_removed += 1
            elif self._store.require_item(scan.item_id).is_terminal:
                self._queue.remove(scan.id)
                logger.warning(
                    "Removed queued scan %s for finished item %s", scan.id, scan.item_id
                )
                report.orphan_scans_removed += 1

        for status in (STATUS_PROCESSING, STATUS_QUEUED):
            for item in self._store.list_items_by_status(status):
                if status == STATUS_PROCESSING and item.updated_at > cutoff:
                    # May still be in its first analysis elsewhere
                    continue
                if self._queue.find_by_item(item.id) is not None:
                    if item.status != STATUS_QUEUED:
                        self._store.update_item(item.id, status=STATUS_QUEUED)
                    continue
                try:
                    self._queue.enqueue(item.image_uri, item.id)
                except DuplicateScanError:
                    continue
                if item.status != STATUS_QUEUED:
                    self._store.update_item(item.id, status=STATUS_QUEUED)
                logger.warning("Re-queued item %s (was %s, no queued scan)", item.id, status)
                report.requeued += 1

        if report.repaired or report.stale_claims:
            logger.info("Recovery: %s", report.to_dict())
        return report

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the analysis client. The store and queue belong to the caller."""
        self._client.close()


class DemoOrchestrator(LibraryOrchestrator):
    """Orchestrator wired to the offline demo analysis client."""

    mode = "demo"

    def __init__(
        self,
        store: ItemStore,
        queue: ScanQueue,
        stager: AssetStager,
        **kwargs,
    ):
        super().__init__(store, queue, DemoAnalysisClient(), stager, **kwargs)


def _discard_staged(managed_uri: str) -> None:
    """Remove a staged copy whose capture was abandoned."""
    try:
        uri_to_path(managed_uri).unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove staged file %s: %s", managed_uri, e)


class ReconcileScheduler:
    """
    Runs reconciliation periodically on a daemon thread.

    ``resume()`` triggers an immediate pass (the app came to the
    foreground); otherwise a pass runs every ``interval`` seconds.
    """

    def __init__(self, orchestrator: CaptureOrchestrator, interval: float = 60.0):
        self._orchestrator = orchestrator
        self._interval = interval
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_report: Optional[ReconcileReport] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background thread (first pass runs immediately)."""
        if self.running:
            return
        self._stopping.clear()
        self._wake.set()
        self._thread = threading.Thread(
            target=self._run, name="omnilens-scheduler", daemon=True,
        )
        self._thread.start()

    def resume(self) -> None:
        """Request an immediate pass."""
        self._wake.set()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the thread, waiting for an in-flight pass to finish."""
        self._stopping.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stopping.is_set():
            self._wake.wait(self._interval)
            self._wake.clear()
            if self._stopping.is_set():
                break
            try:
                self.last_report = self._orchestrator.reconcile()
            except Exception as e:
                logger.warning("Scheduled reconcile failed: %s", e)
