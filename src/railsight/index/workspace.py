"""Workspace file access: discovery, async reads and change events.

``LocalWorkspace`` is the file-content provider used by the orchestrator.
File identifiers (``uri``) are absolute POSIX paths so that convention
checks such as ``"/app/models/" in uri`` work on any platform.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from railsight.core.config import IndexerConfig

logger = logging.getLogger(__name__)


class FileEventType(str, Enum):
    CREATED = "created"
    CHANGED = "changed"
    DELETED = "deleted"


@dataclass(frozen=True)
class FileEvent:
    type: FileEventType
    uri: str


class LocalWorkspace:
    """Read-only view of a project directory on the local filesystem.

    Parameters
    ----------
    root:
        Workspace root.
    config:
        Supplies the extension filter, skipped directories and size cap.
    """

    def __init__(self, root: Path, config: IndexerConfig | None = None) -> None:
        self._root = root.resolve()
        self._config = config or IndexerConfig()
        self._max_bytes = self._config.max_file_size_kb * 1024
        self._extensions = {e.lower() for e in self._config.extensions}
        self._skip_dirs = set(self._config.skip_dirs)

    @property
    def root(self) -> Path:
        return self._root

    def uri_for(self, path: Path) -> str:
        return path.resolve().as_posix()

    def resolve(self, relative: str) -> Path:
        return self._root / relative

    def is_indexable(self, uri: str) -> bool:
        path = Path(uri)
        try:
            parts = path.relative_to(self._root).parts
        except ValueError:
            return False
        if any(part in self._skip_dirs for part in parts[:-1]):
            return False
        return path.suffix.lower() in self._extensions

    def find_files(self) -> list[str]:
        """Return the URIs of all indexable files, sorted for reproducibility."""
        result: list[str] = []
        try:
            for path in sorted(self._root.rglob("*")):
                rel_parts = path.relative_to(self._root).parts
                if any(part in self._skip_dirs for part in rel_parts):
                    continue
                if not path.is_file():
                    continue
                if path.suffix.lower() not in self._extensions:
                    continue
                try:
                    if path.stat().st_size > self._max_bytes:
                        logger.debug("Skipping large file: %s", path)
                        continue
                except OSError:
                    continue
                result.append(self.uri_for(path))
        except OSError as exc:
            logger.warning("Error scanning workspace: %s", exc)
        return result

    async def read_text(self, uri: str) -> str:
        """Read a file off the event loop.  Raises OSError on failure."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read, uri)

    @staticmethod
    def _read(uri: str) -> str:
        return Path(uri).read_text(encoding="utf-8", errors="replace")
