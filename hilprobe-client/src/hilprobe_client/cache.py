"""Cache of binaries that already passed.

The cache file is JSON of the form ``{"files": {"<sha256 hex>": null, ...}}``.
A binary whose digest is present is not sent to the server again.
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def digest(data: bytes) -> str:
    """Return the hex SHA-256 digest of a binary."""
    return hashlib.sha256(data).hexdigest()


class PassCache:
    """Set of digests of binaries that passed.

    Args:
        path: Cache file location, or None for an in-memory cache.
        digests: Initial contents.
    """

    def __init__(self, path: str | Path | None = None, digests: set[str] | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self._digests: set[str] = set(digests or ())

    @classmethod
    def load(cls, path: str | Path | None) -> PassCache:
        """Load a cache file.

        A missing or unreadable file yields an empty cache; it is rewritten on
        :meth:`save`.
        """
        if path is None:
            return cls()
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return cls(path)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable cache file %s: %s", path, exc)
            return cls(path)

        files = data.get("files") if isinstance(data, dict) else None
        if not isinstance(files, dict):
            logger.warning("Ignoring malformed cache file %s", path)
            return cls(path)
        return cls(path, {key for key in files if isinstance(key, str)})

    def __contains__(self, item: object) -> bool:
        return item in self._digests

    def __len__(self) -> int:
        return len(self._digests)

    def add(self, item: str) -> None:
        self._digests.add(item)

    def save(self) -> bool:
        """Write the cache file.

        Returns:
            True if written, False if the cache has no file or writing failed.
        """
        if self.path is None:
            return False
        data = {"files": {key: None for key in sorted(self._digests)}}
        try:
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
        except OSError as exc:
            logger.error("Failed to save cache to %s: %s", self.path, exc)
            return False
        logger.info("Saved cache to %s", self.path)
        return True
