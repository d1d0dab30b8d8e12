"""Asset metadata registry kept in sync with a directory of JSON files."""

from __future__ import annotations

import enum
import json
import logging
import os
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

from .errors import IndexerError

logger = logging.getLogger(__name__)

# length of the asset id prefix used for sub-directory partitioning, in hex characters
DIR_PARTITION_LEN = 2
DEFAULT_SYNC_INTERVAL = 15.0
_ASSET_ID_RE = re.compile(r"[0-9a-fA-F]{64}")


@dataclass(frozen=True)
class AssetMeta:
    """Registry metadata of one asset."""

    contract: Any
    entity: Any
    precision: int
    name: str
    ticker: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """JSON form, leaving out null contract/entity and a missing ticker."""
        doc: dict[str, Any] = {}
        if self.contract is not None:
            doc["contract"] = self.contract
        if self.entity is not None:
            doc["entity"] = self.entity
        doc["precision"] = self.precision
        doc["name"] = self.name
        if self.ticker is not None:
            doc["ticker"] = self.ticker
        return doc


def _meta_from_json(doc: Any) -> AssetMeta:
    if not isinstance(doc, dict):
        raise ValueError("asset metadata must be an object")
    for name in ("contract", "entity", "precision", "name"):
        if name not in doc:
            raise ValueError(f"missing field {name}")
    precision = doc["precision"]
    if isinstance(precision, bool) or not isinstance(precision, int) or not 0 <= precision <= 255:
        raise ValueError(f"invalid precision {precision!r}")
    name = doc["name"]
    if not isinstance(name, str):
        raise ValueError("name must be a string")
    ticker = doc.get("ticker")
    if ticker is not None and not isinstance(ticker, str):
        raise ValueError("ticker must be a string")
    return AssetMeta(doc["contract"], doc["entity"], precision, name, ticker)


def _domain(meta: AssetMeta) -> str | None:
    if isinstance(meta.entity, dict):
        domain = meta.entity.get("domain")
        if isinstance(domain, str):
            return domain
    return None


def _asset_id_order(asset_id: str) -> bytes:
    # asset ids are shown byte-reversed; order by their internal bytes
    return bytes.fromhex(asset_id)[::-1]


class AssetSortField(enum.Enum):
    NAME = "name"
    DOMAIN = "domain"
    TICKER = "ticker"


class AssetSortDir(enum.Enum):
    DESCENDING = "desc"
    ASCENDING = "asc"


AssetEntry = tuple[str, AssetMeta]


@dataclass(frozen=True)
class AssetSorting:
    """Field and direction to list registry assets by."""

    sort_field: AssetSortField = AssetSortField.TICKER
    sort_dir: AssetSortDir = AssetSortDir.ASCENDING

    @classmethod
    def from_query_params(cls, query: Mapping[str, str]) -> "AssetSorting":
        """Read ``sort_field`` and ``sort_dir``; ticker, ascending when absent."""
        fields = {"name": AssetSortField.NAME, "domain": AssetSortField.DOMAIN,
                  "ticker": AssetSortField.TICKER}
        dirs = {"asc": AssetSortDir.ASCENDING, "desc": AssetSortDir.DESCENDING}
        raw_field = query.get("sort_field")
        if raw_field is None:
            sort_field = AssetSortField.TICKER
        elif raw_field in fields:
            sort_field = fields[raw_field]
        else:
            raise IndexerError("invalid sort field")
        raw_dir = query.get("sort_dir")
        if raw_dir is None:
            sort_dir = AssetSortDir.ASCENDING
        elif raw_dir in dirs:
            sort_dir = dirs[raw_dir]
        else:
            raise IndexerError("invalid sort direction")
        return cls(sort_field, sort_dir)

    def _key(self, entry: AssetEntry):
        asset_id, meta = entry
        if self.sort_field is AssetSortField.NAME:
            # names may repeat, so the asset id breaks ties
            return (meta.name.lower(), _asset_id_order(asset_id))
        if self.sort_field is AssetSortField.DOMAIN:
            domain = _domain(meta)
            return (domain is not None, domain or "")
        ticker = meta.ticker
        return (ticker is not None, ticker.lower() if ticker is not None else "")

    def sort(self, entries: Iterable[AssetEntry]) -> list[AssetEntry]:
        return sorted(
            entries, key=self._key, reverse=self.sort_dir is AssetSortDir.DESCENDING
        )


class _SyncThread(threading.Thread):
    def __init__(self, registry: "AssetRegistry", interval: float) -> None:
        super().__init__(name="registry-sync", daemon=True)
        self._registry = registry
        self._interval = interval
        self._stopped = threading.Event()

    def run(self) -> None:
        while True:
            try:
                self._registry.fs_sync()
            except IndexerError as exc:
                logger.error("registry fs_sync failed: %s", exc)
            if self._stopped.wait(self._interval):
                return

    def stop(self) -> None:
        self._stopped.set()
        self.join()


class AssetRegistry:
    """Asset metadata loaded from ``<dir>/<2 hex chars>/<asset id>.json`` files."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self._cache: dict[str, tuple[int, AssetMeta]] = {}
        self._lock = threading.RLock()

    def get(self, asset_id: str) -> AssetMeta | None:
        with self._lock:
            entry = self._cache.get(asset_id.lower())
        return entry[1] if entry is not None else None

    def list(
        self, start_index: int, limit: int, sorting: AssetSorting
    ) -> tuple[int, list[AssetEntry]]:
        """Total number of assets and one sorted page of them."""
        with self._lock:
            entries = [(asset_id, meta) for asset_id, (_, meta) in self._cache.items()]
        ordered = sorting.sort(entries)
        return len(ordered), ordered[start_index : start_index + max(limit, 0)]

    def fs_sync(self) -> None:
        """Load new and modified metadata files from the directory."""
        with self._lock:
            try:
                partitions = list(os.scandir(self.directory))
            except OSError as exc:
                raise IndexerError("failed reading asset dir") from exc
            for partition in partitions:
                try:
                    is_dir = partition.is_dir(follow_symlinks=False)
                except OSError as exc:
                    raise IndexerError("failed getting file type") from exc
                if not is_dir or len(os.fsencode(partition.name)) != DIR_PARTITION_LEN:
                    continue
                try:
                    files = list(os.scandir(partition.path))
                except OSError as exc:
                    raise IndexerError("failed reading asset subdir") from exc
                for file_entry in files:
                    self._sync_file(file_entry)

    def _sync_file(self, file_entry: os.DirEntry) -> None:
        path = Path(file_entry.path)
        if path.suffix != ".json":
            return
        if not _ASSET_ID_RE.fullmatch(path.stem):
            raise IndexerError("invalid filename")
        asset_id = path.stem.lower()
        try:
            modified = file_entry.stat().st_mtime_ns
        except OSError as exc:
            raise IndexerError("failed reading metadata") from exc
        cached = self._cache.get(asset_id)
        if cached is not None and cached[0] == modified:
            return
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise IndexerError("failed reading file") from exc
        try:
            meta = _meta_from_json(json.loads(text))
        except ValueError as exc:
            raise IndexerError("failed parsing file") from exc
        self._cache[asset_id] = (modified, meta)

    def spawn_sync(self, interval: float = DEFAULT_SYNC_INTERVAL) -> _SyncThread:
        """Re-sync every ``interval`` seconds in a background thread; ``stop()`` ends it."""
        thread = _SyncThread(self, interval)
        thread.start()
        return thread