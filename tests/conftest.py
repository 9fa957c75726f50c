"""
Shared pytest fixtures for omnilens tests.

Provides fake analysis clients so that no test talks to a network service.
"""

import threading
from pathlib import Path

import pytest

from omnilens.analysis import AnalysisResult
from omnilens.errors import UnreachableError
from omnilens.item_store import ItemStore
from omnilens.orchestrator import LibraryOrchestrator
from omnilens.scan_queue import ScanQueue
from omnilens.staging import LocalAssetStager


class FakeAnalysisClient:
    """
    Analysis client returning a fixed result.

    Set ``error`` to make every call raise it instead. Calls are counted
    (thread-safe) so tests can assert how often the service was hit.
    """

    def __init__(self, result: AnalysisResult = None, error: Exception = None):
        self.result = result or AnalysisResult(
            suggested_title="Coffee receipt",
            ocr_text="Blue Bottle 2x latte 9.50",
            suggested_category="Receipts",
            suggested_tags=["finance", "coffee"],
            identified_objects=["receipt"],
        )
        self.error = error
        self.calls: list[str] = []
        self.closed = False
        self._lock = threading.Lock()

    def analyze(self, image_uri: str) -> AnalysisResult:
        with self._lock:
            self.calls.append(image_uri)
        if self.error is not None:
            raise self.error
        return self.result

    def close(self) -> None:
        self.closed = True


class BlockingAnalysisClient(FakeAnalysisClient):
    """Holds every call until ``release`` is set, to widen race windows."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.entered = threading.Event()
        self.release = threading.Event()

    def analyze(self, image_uri: str) -> AnalysisResult:
        self.entered.set()
        self.release.wait(5)
        return super().analyze(image_uri)


def unreachable() -> UnreachableError:
    return UnreachableError("connection refused")


@pytest.fixture
def make_image(tmp_path):
    """Factory writing a small fake image under tmp_path/camera."""
    camera = tmp_path / "camera"
    camera.mkdir()
    counter = {"n": 0}

    def _make(name: str = None, data: bytes = None) -> Path:
        counter["n"] += 1
        path = camera / (name or f"IMG_{counter['n']:04d}.jpg")
        path.write_bytes(data or b"\xff\xd8\xff\xe0" + bytes([counter["n"]]) * 64)
        return path

    return _make


@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "store" / "omnilens.db"


@pytest.fixture
def store(db_path):
    s = ItemStore(db_path)
    yield s
    s.close()


@pytest.fixture
def queue(db_path, store):
    q = ScanQueue(db_path)
    yield q
    q.close()


@pytest.fixture
def stager(tmp_path):
    return LocalAssetStager(tmp_path / "store" / "captures")


@pytest.fixture
def fake_client():
    return FakeAnalysisClient()


@pytest.fixture
def make_orchestrator(store, queue, stager):
    """Factory building a LibraryOrchestrator around a given client."""

    def _make(client, **kwargs) -> LibraryOrchestrator:
        return LibraryOrchestrator(store, queue, client, stager, **kwargs)

    return _make
