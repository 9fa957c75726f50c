"""
Clients for the image analysis (enrichment) service.

The analysis service turns an image into suggestions: a title, OCR text, a
category, tags and identified objects. Clients never hide a failure behind a
default-valued result. A reachable service that returns nothing useful yields
an AnalysisResult full of defaults; an unreachable one raises an
AnalysisError subclass, so the orchestrator can tell the two apart and queue
only the captures that are worth retrying.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from .errors import (
    AnalysisTimeoutError,
    AssetUnreadableError,
    BadResponseError,
    UnreachableError,
)
from .staging import original_stem, uri_to_path
from .types import DEFAULT_CATEGORY, DEFAULT_TITLE

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


@dataclass
class AnalysisResult:
    """Enrichment suggested by the analysis service."""
    suggested_title: str = DEFAULT_TITLE
    ocr_text: str = ""
    suggested_category: str = DEFAULT_CATEGORY
    suggested_tags: list[str] = field(default_factory=list)
    identified_objects: list[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> AnalysisResult:
        """Build a result from a response body, defaulting absent fields.

        Blank strings and nulls count as absent. List members that are not
        non-blank strings are dropped.
        """
        return cls(
            suggested_title=_text(data.get("suggested_title")) or DEFAULT_TITLE,
            ocr_text=_text(data.get("ocr_text")),
            suggested_category=_text(data.get("suggested_category")) or DEFAULT_CATEGORY,
            suggested_tags=_strings(data.get("suggested_tags")),
            identified_objects=_strings(data.get("identified_objects")),
        )

    def item_fields(self) -> dict[str, Any]:
        """The item fields this result fills in."""
        return {
            "title": self.suggested_title,
            "ocr_text": self.ocr_text,
            "category": self.suggested_category,
            "tags": list(self.suggested_tags),
            "identified_objects": list(self.identified_objects),
        }


def _text(value) -> str:
    if isinstance(value, str):
        return value.strip()
    return ""


def _strings(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v.strip() for v in value if isinstance(v, str) and v.strip()]


@runtime_checkable
class AnalysisClient(Protocol):
    """
    Turns a managed image into enrichment suggestions.

    Implementations raise AnalysisError subclasses on failure; they never
    return a default-valued result in place of an error.
    """

    def analyze(self, image_uri: str) -> AnalysisResult:
        """
        Analyze the image at a managed location.

        Args:
            image_uri: Path or file:// URI of a staged image

        Returns:
            AnalysisResult (fields defaulted where the service gave none)

        Raises:
            UnreachableError: network failure or non-2xx response
            AnalysisTimeoutError: the request timed out
            BadResponseError: the response body is not a JSON object
            AssetUnreadableError: the image cannot be read
        """
        ...

    def close(self) -> None:
        ...


def read_image_bytes(image_uri: str) -> bytes:
    """Read a staged image, mapping OS errors to AssetUnreadableError."""
    path = uri_to_path(image_uri)
    try:
        return path.read_bytes()
    except OSError as e:
        raise AssetUnreadableError(f"Cannot read image {path}: {e}") from e


class HttpAnalysisClient:
    """HTTP client for a JSON image analysis endpoint."""

    def __init__(self, endpoint: str, *, timeout: float = DEFAULT_TIMEOUT):
        endpoint = (endpoint or "").strip()
        if not endpoint.startswith(("http://", "https://")):
            raise ValueError(f"Analysis endpoint must be an http(s) URL (got {endpoint!r})")
        self._endpoint = endpoint
        self._timeout = timeout
        self._client = httpx.Client(
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def analyze(self, image_uri: str) -> AnalysisResult:
        """POST {endpoint} with the base64 image -> AnalysisResult."""
        image_data = base64.b64encode(read_image_bytes(image_uri)).decode("ascii")

        try:
            resp = self._client.post(self._endpoint, json={"image_data": image_data})
            resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise AnalysisTimeoutError(
                f"Analysis timed out after {self._timeout:.0f}s: {e}"
            ) from e
        except httpx.HTTPStatusError as e:
            raise UnreachableError(
                f"Analysis request failed: {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise UnreachableError(f"Analysis service unreachable: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise BadResponseError(f"Analysis response is not JSON: {e}") from e
        if not isinstance(data, dict):
            raise BadResponseError(
                f"Analysis response is not a JSON object (got {type(data).__name__})"
            )

        result = AnalysisResult.from_payload(data)
        logger.debug("Analyzed %s: %r", image_uri, result.suggested_title)
        return result

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


# Suggestions for the offline demo client, keyed by file-name keyword
_DEMO_HINTS = {
    "receipt": ("Receipts", ["finance", "receipt"], ["paper"]),
    "invoice": ("Receipts", ["finance", "invoice"], ["paper"]),
    "note": ("Notes", ["handwriting"], ["notebook", "pen"]),
    "whiteboard": ("Notes", ["meeting", "ux"], ["whiteboard", "marker"]),
    "card": ("Contacts", ["business-card"], ["card"]),
    "book": ("Reading", ["book"], ["book"]),
    "plant": ("Home", ["garden"], ["plant", "pot"]),
}


class DemoAnalysisClient:
    """
    Offline analysis client producing deterministic suggestions.

    The title comes from the file name, category and tags from keywords in
    it, and the OCR text from a content hash, so the same image always yields
    the same result without any network access.
    """

    def analyze(self, image_uri: str) -> AnalysisResult:
        data = read_image_bytes(image_uri)
        path = uri_to_path(image_uri)
        stem = original_stem(path).replace("_", " ").replace("-", " ").strip()

        category, tags, objects = DEFAULT_CATEGORY, [], []
        lowered = stem.lower()
        for keyword, (cat, kw_tags, kw_objects) in _DEMO_HINTS.items():
            if keyword in lowered:
                category, tags, objects = cat, list(kw_tags), list(kw_objects)
                break

        digest = hashlib.sha256(data).hexdigest()[:12]
        return AnalysisResult(
            suggested_title=stem.title() if stem else DEFAULT_TITLE,
            ocr_text=f"demo-{digest}",
            suggested_category=category,
            suggested_tags=tags,
            identified_objects=objects,
        )

    def close(self) -> None:
        pass
