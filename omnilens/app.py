"""
Application wiring: one store, one queue, one orchestrator per process.

``open_library`` is the single entry point front ends use. It resolves the
store directory, loads (or creates) its config, opens the database, picks the
live or demo orchestrator and runs startup recovery.
"""

import logging
from pathlib import Path
from typing import Optional, Union

from .analysis import AnalysisClient, HttpAnalysisClient
from .config import StoreConfig, get_default_store_path, load_or_create_config
from .item_store import ItemStore
from .logging_config import configure_ops_log, remove_ops_log
from .orchestrator import (
    DemoOrchestrator,
    LibraryOrchestrator,
    RecoveryReport,
    ReconcileScheduler,
)
from .scan_queue import ScanQueue
from .staging import AssetStager, LocalAssetStager

logger = logging.getLogger(__name__)


def create_orchestrator(
    config: StoreConfig,
    store: ItemStore,
    queue: ScanQueue,
    stager: AssetStager,
    client: Optional[AnalysisClient] = None,
) -> LibraryOrchestrator:
    """
    Build the orchestrator the config asks for.

    An explicit ``client`` always yields a live orchestrator around it;
    otherwise ``analysis.mode`` chooses between HTTP and demo analysis.
    """
    options = dict(
        default_collection_name=config.default_collection,
        workers=config.reconcile.workers,
        max_attempts=config.reconcile.max_attempts,
    )
    if client is None and config.analysis.mode == "demo":
        return DemoOrchestrator(store, queue, stager, **options)
    if client is None:
        client = HttpAnalysisClient(
            config.analysis.endpoint, timeout=config.analysis.timeout,
        )
    return LibraryOrchestrator(store, queue, client, stager, **options)


class Library:
    """
    An open capture library.

    Owns the store, queue, orchestrator and (once started) the reconcile
    scheduler, and closes them together.
    """

    def __init__(
        self,
        config: StoreConfig,
        *,
        client: Optional[AnalysisClient] = None,
        stager: Optional[AssetStager] = None,
        recover: bool = True,
    ):
        self.config = config
        self._ops_log_handler = configure_ops_log(config.path)
        self.store = ItemStore(config.database_path)
        self.queue = ScanQueue(
            config.database_path,
            stale_claim_seconds=config.reconcile.stale_claim_seconds,
        )
        self.stager = stager or LocalAssetStager(config.captures_path)
        self.orchestrator = create_orchestrator(
            config, self.store, self.queue, self.stager, client=client,
        )
        self._scheduler: Optional[ReconcileScheduler] = None
        self.recovery: Optional[RecoveryReport] = None
        if recover:
            self.recovery = self.orchestrator.recover()

    @property
    def path(self) -> Path:
        return self.config.path

    @property
    def scheduler(self) -> ReconcileScheduler:
        """The periodic reconcile scheduler (created on first use, not started)."""
        if self._scheduler is None:
            self._scheduler = ReconcileScheduler(
                self.orchestrator, interval=self.config.reconcile.interval,
            )
        return self._scheduler

    def close(self) -> None:
        """Stop the scheduler, then close the orchestrator and database."""
        if self._scheduler is not None:
            self._scheduler.stop()
            self._scheduler = None
        self.orchestrator.close()
        self.queue.close()
        self.store.close()
        remove_ops_log(self._ops_log_handler)
        self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def open_library(
    store_path: Optional[Union[str, Path]] = None,
    *,
    config: Optional[StoreConfig] = None,
    client: Optional[AnalysisClient] = None,
    stager: Optional[AssetStager] = None,
    recover: bool = True,
) -> Library:
    """
    Open (creating if needed) the library at ``store_path``.

    Args:
        store_path: Store directory; defaults to OMNILENS_STORE_PATH or ~/.omnilens
        config: Use this config instead of reading omnilens.toml
        client: Analysis client to use instead of the configured one
        stager: Asset stager to use instead of copying into captures/
        recover: Run startup recovery before returning
    """
    if config is None:
        path = Path(store_path).expanduser() if store_path else get_default_store_path()
        config = load_or_create_config(path)
    logger.debug("Opening library at %s (mode=%s)", config.path, config.analysis.mode)
    return Library(config, client=client, stager=stager, recover=recover)
