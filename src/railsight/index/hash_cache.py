"""HashCache: the only index state persisted between sessions.

HashCache handles persistence alone: reading and writing the JSON blob
that maps file URIs to content hashes.  Deciding what a stored hash means
is left to ProjectIndexer.

File format::

    {"fileHashes": [[uri, hash], ...], "timestamp": <ms since epoch>}
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path

logger = logging.getLogger(__name__)


class HashCache:
    """JSON-file store for ``uri -> content hash``."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, str]:
        """Return the stored hashes; any failure means an empty cache."""
        if not self._path.is_file():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            pairs = data.get("fileHashes", []) if isinstance(data, dict) else []
            hashes = {str(uri): str(digest) for uri, digest in pairs}
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Ignoring unreadable index cache %s: %s", self._path, exc)
            return {}
        logger.info("Loaded %d cached file hashes", len(hashes))
        return hashes

    def save(self, hashes: dict[str, str]) -> bool:
        """Write *hashes* to disk.  Returns False (and logs) on I/O failure."""
        payload = {
            "fileHashes": [[uri, digest] for uri, digest in sorted(hashes.items())],
            "timestamp": int(time.time() * 1000),
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(payload), encoding="utf-8")
        except OSError as exc:
            logger.warning("Cannot save index cache %s: %s", self._path, exc)
            return False
        logger.info("Saved %d file hashes to %s", len(hashes), self._path)
        return True
