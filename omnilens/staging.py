"""
Asset staging: moving raw captures into managed storage.

Front ends hand the orchestrator a source URI (a camera file, a gallery
export); the stager copies it into the library's own ``captures`` directory
and returns the managed location, which stays valid for the lifetime of the
item.
"""

import errno
import logging
import re
import shutil
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import unquote, urlparse

from .errors import StagingIOError, StagingPermissionError
from .types import new_id

logger = logging.getLogger(__name__)

DEFAULT_SUFFIX = ".jpg"

# uuid hex + "-" prefix the stager puts in front of the original stem
STAGED_PREFIX_RE = re.compile(r"^[0-9a-f]{32}-")
_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]+")


def uri_to_path(uri: str) -> Path:
    """Convert a plain path or file:// URI to a Path."""
    if uri.startswith("file://"):
        return Path(unquote(urlparse(uri).path))
    return Path(uri).expanduser()


def original_stem(path: Path) -> str:
    """The source file's stem as it was before staging."""
    return STAGED_PREFIX_RE.sub("", path.stem)


@runtime_checkable
class AssetStager(Protocol):
    """Copies a source asset into managed storage."""

    def stage(self, source_uri: str) -> str:
        """
        Args:
            source_uri: Path or file:// URI of the raw capture

        Returns:
            Managed location of the staged copy

        Raises:
            StagingPermissionError: access denied
            StagingIOError: any other read/write failure
        """
        ...


class LocalAssetStager:
    """Stages local files by copying them into a captures directory."""

    def __init__(self, captures_dir: Path):
        self._captures_dir = Path(captures_dir)

    @property
    def captures_dir(self) -> Path:
        return self._captures_dir

    def stage(self, source_uri: str) -> str:
        source = uri_to_path(source_uri)
        if not source.is_file():
            raise StagingIOError(f"Not a file: {source}")

        stem = _UNSAFE_CHARS_RE.sub("_", source.stem).strip("._") or "capture"
        suffix = source.suffix.lower() or DEFAULT_SUFFIX
        destination = self._captures_dir / f"{new_id()}-{stem[:64]}{suffix}"

        try:
            self._captures_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, destination)
        except PermissionError as e:
            raise StagingPermissionError(f"Permission denied staging {source}: {e}") from e
        except OSError as e:
            if e.errno in (errno.EACCES, errno.EPERM):
                raise StagingPermissionError(f"Permission denied staging {source}: {e}") from e
            raise StagingIOError(f"Could not stage {source}: {e}") from e

        logger.info("Staged %s -> %s", source, destination)
        return str(destination)
