"""Tests for application wiring, logging and error logging."""

import logging
import os
import stat
import threading
from pathlib import Path

import pytest

from omnilens.app import create_orchestrator, open_library
from omnilens.analysis import HttpAnalysisClient
from omnilens.config import StoreConfig
from omnilens.errors import log_exception
from omnilens.logging_config import configure_ops_log, remove_ops_log
from omnilens.orchestrator import DemoOrchestrator, LibraryOrchestrator
from omnilens.types import STATUS_PROCESSING, STATUS_QUEUED, STATUS_READY

from tests.conftest import BlockingAnalysisClient, FakeAnalysisClient, unreachable


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("OMNILENS_STORE_PATH", "OMNILENS_ANALYSIS_ENDPOINT", "OMNILENS_ANALYSIS_MODE"):
        monkeypatch.delenv(var, raising=False)


class TestOpenLibrary:
    def test_creates_store_layout(self, tmp_path):
        with open_library(tmp_path / "lib") as lib:
            assert (tmp_path / "lib" / "omnilens.toml").exists()
            assert (tmp_path / "lib" / "omnilens.db").exists()
            assert isinstance(lib.orchestrator, LibraryOrchestrator)
            assert lib.orchestrator.mode == "live"
            assert lib.recovery is not None

    def test_demo_mode_from_config(self, tmp_path):
        config = StoreConfig(path=tmp_path)
        config.analysis.mode = "demo"
        with open_library(config=config) as lib:
            assert isinstance(lib.orchestrator, DemoOrchestrator)

    def test_explicit_client_wins(self, tmp_path, make_image):
        client = FakeAnalysisClient()
        with open_library(tmp_path / "lib", client=client) as lib:
            item = lib.orchestrator.add_capture(str(make_image()))
            assert item.status == STATUS_READY
            assert (tmp_path / "lib" / "captures").is_dir()
        assert client.closed

    def test_second_library_leaves_inflight_capture_alone(self, tmp_path, make_image):
        """Opening the store while another library is mid-capture loses nothing."""
        blocking = BlockingAnalysisClient(error=unreachable())
        first = open_library(tmp_path / "lib", client=blocking)
        result = {}
        t = threading.Thread(
            target=lambda: result.setdefault("item", first.orchestrator.add_capture(str(make_image())))
        )
        t.start()
        assert blocking.entered.wait(5)

        with open_library(tmp_path / "lib", client=FakeAnalysisClient()) as second:
            assert second.recovery.requeued == 0
            assert second.recovery.stale_claims == 0
            assert second.queue.list_all() == []

        blocking.release.set()
        t.join(5)

        item = result["item"]
        assert item.status == STATUS_QUEUED
        assert first.store.get_item(item.id).status == STATUS_QUEUED
        assert [s.item_id for s in first.queue.list_all()] == [item.id]
        assert Path(item.image_uri).exists()
        first.close()

    def test_recovers_stale_capture_on_open(self, tmp_path):
        config = StoreConfig(path=tmp_path / "lib")
        config.reconcile.stale_claim_seconds = 0
        with open_library(config=config, client=FakeAnalysisClient()) as lib:
            stuck = lib.store.create_item("/captures/a.jpg", status=STATUS_PROCESSING)

        with open_library(config=config, client=FakeAnalysisClient()) as lib:
            assert lib.recovery.requeued == 1
            assert lib.store.get_item(stuck.id).status == STATUS_QUEUED

    def test_scheduler_stopped_on_close(self, tmp_path):
        lib = open_library(tmp_path / "lib", client=FakeAnalysisClient())
        lib.scheduler.start()
        assert lib.scheduler.running
        scheduler = lib.scheduler
        lib.close()
        assert not scheduler.running

    def test_ops_log_written(self, tmp_path):
        with open_library(tmp_path / "lib", client=FakeAnalysisClient()) as lib:
            lib.orchestrator.add_collection("Receipts")
            lib.store.delete_collection(lib.store.find_collection_by_name("Receipts").id)
        log = (tmp_path / "lib" / "omnilens-ops.log").read_text()
        assert "Deleted collection" in log


class TestCreateOrchestrator:
    def test_live_uses_http_client(self, tmp_path, store, queue, stager):
        config = StoreConfig(path=tmp_path)
        orch = create_orchestrator(config, store, queue, stager)
        assert isinstance(orch._client, HttpAnalysisClient)
        assert orch._client.endpoint == config.analysis.endpoint
        orch.close()

    def test_max_attempts_and_workers_passed(self, tmp_path, store, queue, stager):
        config = StoreConfig(path=tmp_path)
        config.reconcile.max_attempts = 5
        config.reconcile.workers = 2
        orch = create_orchestrator(config, store, queue, stager, client=FakeAnalysisClient())
        assert orch._max_attempts == 5
        assert orch._workers == 2


class TestLogging:
    def test_ops_log_handler_removed(self, tmp_path):
        handler = configure_ops_log(tmp_path)
        logger = logging.getLogger("omnilens")
        assert handler in logger.handlers
        remove_ops_log(handler)
        assert handler not in logger.handlers

    def test_log_exception(self, tmp_path):
        try:
            raise RuntimeError("kaboom")
        except RuntimeError as e:
            path = log_exception(e, context="test", store_path=tmp_path)

        assert path == tmp_path / "omnilens-errors.log"
        text = path.read_text()
        assert "kaboom" in text
        assert "Traceback" in text
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_log_exception_uses_env_store(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OMNILENS_STORE_PATH", str(tmp_path))
        path = log_exception(ValueError("x"))
        assert path.parent == tmp_path
