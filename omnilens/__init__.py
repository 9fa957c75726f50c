"""
omnilens - capture images and keep them searchable.

Captures are copied into managed storage, enriched by an image analysis
service (title, OCR text, category, tags, objects) and kept in a local SQLite
library. When the service is unreachable the capture is queued and enriched
later by reconciliation.

Basic usage:
    from omnilens import open_library

    with open_library("~/.omnilens") as lib:
        item = lib.orchestrator.add_capture("~/Pictures/receipt.jpg")
        results = lib.orchestrator.run_search("coffee")
"""

__version__ = "0.1.0"

from .app import Library, create_orchestrator, open_library
from .analysis import AnalysisClient, AnalysisResult, DemoAnalysisClient, HttpAnalysisClient
from .config import StoreConfig, load_or_create_config
from .errors import (
    AnalysisError,
    AnalysisTimeoutError,
    AssetUnreadableError,
    BadResponseError,
    CaptureFailedError,
    DuplicateScanError,
    InconsistencyError,
    NotFoundError,
    OmnilensError,
    StagingError,
    StagingIOError,
    StagingPermissionError,
    UnreachableError,
    ValidationError,
)
from .item_store import ItemStore
from .orchestrator import (
    DEFAULT_COLLECTION,
    CaptureOrchestrator,
    DemoOrchestrator,
    LibraryOrchestrator,
    ReconcileReport,
    ReconcileScheduler,
    RecoveryReport,
)
from .scan_queue import ScanQueue
from .search import SearchEngine
from .staging import AssetStager, LocalAssetStager
from .types import Collection, Item, LibrarySnapshot, QueuedScan, SearchFilters

__all__ = [
    "__version__",
    "open_library",
    "create_orchestrator",
    "Library",
    "StoreConfig",
    "load_or_create_config",
    "ItemStore",
    "ScanQueue",
    "SearchEngine",
    "CaptureOrchestrator",
    "LibraryOrchestrator",
    "DemoOrchestrator",
    "ReconcileScheduler",
    "ReconcileReport",
    "RecoveryReport",
    "DEFAULT_COLLECTION",
    "AnalysisClient",
    "AnalysisResult",
    "HttpAnalysisClient",
    "DemoAnalysisClient",
    "AssetStager",
    "LocalAssetStager",
    "Item",
    "Collection",
    "QueuedScan",
    "SearchFilters",
    "LibrarySnapshot",
    "OmnilensError",
    "NotFoundError",
    "ValidationError",
    "InconsistencyError",
    "DuplicateScanError",
    "CaptureFailedError",
    "StagingError",
    "StagingPermissionError",
    "StagingIOError",
    "AnalysisError",
    "UnreachableError",
    "AnalysisTimeoutError",
    "BadResponseError",
    "AssetUnreadableError",
]
