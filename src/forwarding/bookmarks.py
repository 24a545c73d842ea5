"""Per-source bookmark persistence.

One JSON file per source under the state directory holds the last forwarded
record id. Writes go to a temp file in the same directory and are moved into
place with `os.replace`, so a crash mid-write leaves the previous value intact.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from urllib.parse import quote

from .errors import BookmarkPersistFailure
from .models import RecordId, utc_now

logger = logging.getLogger(__name__)


def _file_name(source: str) -> str:
    """Map a source name to a safe file name (e.g. 'Microsoft-Windows-X/Operational')."""
    name = quote(source, safe="")
    if name.startswith("."):
        # Keep clear of hidden files and the temp-file prefix.
        name = "%2E" + name[1:]
    return name + ".json"


class BookmarkStore:
    """Durable last-forwarded record id per source."""

    def __init__(self, state_dir: str | Path) -> None:
        self._dir = Path(state_dir)
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def state_dir(self) -> Path:
        return self._dir

    def path_for(self, source: str) -> Path:
        return self._dir / _file_name(source)

    def load(self, source: str) -> RecordId | None:
        """Return the stored bookmark, or None when absent or unreadable."""
        path = self.path_for(source)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            value = data["record_id"]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Bookmark for %s at %s is unreadable, treating as uninitialized: %s", source, path, exc)
            return None
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            logger.warning("Bookmark for %s at %s holds an invalid value %r", source, path, value)
            return None
        return value

    def save(self, source: str, record_id: RecordId) -> None:
        """Persist `record_id` for `source`.

        Raises:
        - `ValueError` if this would move the bookmark backwards.
        - `BookmarkPersistFailure` if the write fails.
        """
        current = self.load(source)
        if current is not None and record_id < current:
            raise ValueError(f"bookmark for {source} cannot move backwards ({current} -> {record_id})")

        path = self.path_for(source)
        data = {"source": source, "record_id": record_id, "updated_at": utc_now().isoformat()}
        try:
            fd, tmp = tempfile.mkstemp(dir=self._dir, prefix=".bookmark-", suffix=".tmp")
        except OSError as exc:
            raise BookmarkPersistFailure(f"cannot write bookmark for {source}: {exc}", source=source) from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError as exc:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise BookmarkPersistFailure(f"cannot write bookmark for {source}: {exc}", source=source) from exc
