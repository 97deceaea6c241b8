"""Durable per-session storage for layered context.

Layout under the storage root::

    layered-context/<session>/index.json
    layered-context/<session>/archives/<node_id>.json

Reads never raise: a missing, unreadable or incompatible document is
reported as ``Err`` by the ``try_*`` methods and as ``None`` by the plain
ones, which callers treat as a cold start.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Protocol, runtime_checkable

from stratum.context.types import INDEX_VERSION, ArchivePayload, IndexDocument
from stratum.core.errors import ErrorCode, StratumError
from stratum.core.result import Err, Ok, Result

logger = logging.getLogger(__name__)

INDEX_DIR = "layered-context"
INDEX_FILE = "index.json"
ARCHIVE_DIR = "archives"

_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9._-]")


def safe_key(value: str) -> str:
    """File-system safe form of a session key or node id."""
    return _UNSAFE_RE.sub("_", value)


def session_key_for(platform: str, chat_id: str | None = None) -> str:
    return f"{platform}:{chat_id or 'default'}"


@runtime_checkable
class ArchiveStore(Protocol):
    """Persistence backend for index documents and L2 archives."""

    def load_index(self, session_key: str) -> IndexDocument | None: ...

    def save_index(self, doc: IndexDocument) -> None: ...

    def write_archive(self, session_key: str, node_id: str, payload: ArchivePayload) -> str: ...

    def read_archive(self, path: str) -> ArchivePayload | None: ...

    def cleanup_archives(self, session_key: str, keep_node_ids: set[str]) -> int: ...


def _atomic_write_json(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(suffix=".tmp", prefix=f"{path.stem}_", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _read_json(path: Path) -> Result[dict]:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return Err("missing")
    except OSError as e:
        return Err(f"unreadable:{e}", e)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        return Err(f"invalid_json:{e.msg}", e)
    if not isinstance(data, dict):
        return Err("not_an_object")
    return Ok(data)


class FileSystemArchiveStore:
    """Archive store backed by JSON files.

    Writes go through a temp file and ``os.replace`` so a reader never sees
    a partially written document.
    """

    def __init__(self, base_path: str | Path) -> None:
        self._base_path = Path(base_path)

    @property
    def root_dir(self) -> Path:
        return self._base_path / INDEX_DIR

    def session_dir(self, session_key: str) -> Path:
        return self.root_dir / safe_key(session_key)

    def index_path(self, session_key: str) -> Path:
        return self.session_dir(session_key) / INDEX_FILE

    def archive_dir(self, session_key: str) -> Path:
        return self.session_dir(session_key) / ARCHIVE_DIR

    def archive_path(self, session_key: str, node_id: str) -> Path:
        return self.archive_dir(session_key) / f"{safe_key(node_id)}.json"

    # ------------------------------------------------------------------
    # Index
    # ------------------------------------------------------------------

    def try_load_index(self, session_key: str) -> Result[IndexDocument]:
        path = self.index_path(session_key)
        loaded = _read_json(path)
        if not isinstance(loaded, Ok):
            return loaded
        data = loaded.value
        if data.get("version") != INDEX_VERSION:
            return Err(f"version_mismatch:{data.get('version')!r}")
        if not isinstance(data.get("nodes"), list):
            return Err("malformed_nodes")
        try:
            return Ok(IndexDocument.from_dict(data))
        except (KeyError, TypeError, ValueError) as e:
            return Err(f"malformed:{e}", e)

    def load_index(self, session_key: str) -> IndexDocument | None:
        result = self.try_load_index(session_key)
        if isinstance(result, Err) and result.reason != "missing":
            logger.debug("Ignoring index for %s: %s", session_key, result.reason)
        return result.unwrap_or(None)

    def save_index(self, doc: IndexDocument) -> None:
        path = self.index_path(doc.session_key)
        try:
            _atomic_write_json(path, doc.to_dict())
        except OSError as e:
            raise StratumError(
                ErrorCode.STORAGE_WRITE_FAILED,
                context={"path": str(path), "detail": str(e)},
                cause=e,
            ) from e
        logger.debug("Saved index for %s with %d nodes", doc.session_key, len(doc.nodes))

    # ------------------------------------------------------------------
    # Archives
    # ------------------------------------------------------------------

    def write_archive(self, session_key: str, node_id: str, payload: ArchivePayload) -> str:
        path = self.archive_path(session_key, node_id)
        try:
            _atomic_write_json(path, payload.to_dict())
        except OSError as e:
            raise StratumError(
                ErrorCode.STORAGE_WRITE_FAILED,
                context={"path": str(path), "detail": str(e)},
                cause=e,
            ) from e
        return str(path)

    def try_read_archive(self, path: str) -> Result[ArchivePayload]:
        loaded = _read_json(Path(path))
        if not isinstance(loaded, Ok):
            return loaded
        try:
            return Ok(ArchivePayload.from_dict(loaded.value))
        except (KeyError, TypeError, ValueError) as e:
            return Err(f"malformed:{e}", e)

    def read_archive(self, path: str) -> ArchivePayload | None:
        return self.try_read_archive(path).unwrap_or(None)

    def cleanup_archives(self, session_key: str, keep_node_ids: set[str]) -> int:
        """Delete archive files whose node is not in ``keep_node_ids``.

        Returns the number of deleted files. A missing archive directory is
        not an error.
        """
        archive_dir = self.archive_dir(session_key)
        if not archive_dir.is_dir():
            return 0

        keep = {f"{safe_key(node_id)}.json" for node_id in keep_node_ids}
        removed = 0
        for path in archive_dir.glob("*.json"):
            if path.name in keep:
                continue
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
        if removed:
            logger.debug("Removed %d orphaned archives for %s", removed, session_key)
        return removed
