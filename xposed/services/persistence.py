"""Persisting the local cache between sessions."""

import asyncio
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, Optional

from loguru import logger
from pydantic import ValidationError

from xposed.schemas import LocationInfo, now_ms
from xposed.utils.cache import BoundedCache

SNAPSHOT_VERSION = 1


class PersistentStore(ABC):
    """Opaque blob storage. The engine never looks inside the medium."""

    @abstractmethod
    async def load(self) -> Optional[bytes]:
        """Return the stored blob, or None when nothing has been saved."""
        pass

    @abstractmethod
    async def save(self, blob: bytes) -> None:
        pass


class FileStore(PersistentStore):
    """Stores the blob in a single file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    async def load(self) -> Optional[bytes]:
        if not self.path.exists():
            return None
        return await asyncio.to_thread(self.path.read_bytes)

    async def save(self, blob: bytes) -> None:
        await asyncio.to_thread(self._write, blob)

    def _write(self, blob: bytes) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Write then rename so a crash never leaves a half-written cache
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_bytes(blob)
        tmp.replace(self.path)


class MemoryStore(PersistentStore):
    """Keeps the blob in memory. Handy for tests and throwaway engines."""

    def __init__(self, blob: Optional[bytes] = None):
        self.blob = blob

    async def load(self) -> Optional[bytes]:
        return self.blob

    async def save(self, blob: bytes) -> None:
        self.blob = blob


def encode_snapshot(
    cache: BoundedCache[str, Optional[LocationInfo]],
    ttl_ms: int,
) -> bytes:
    """Serialize positive cache entries with an expiry timestamp each.

    Entries are written least to most recently used so loading them back
    in order restores recency.
    """
    entries = {}
    for key, info in cache.items():
        if info is None:
            continue
        entries[key] = {
            "v": info.model_dump(mode="json", exclude={"source_tier"}),
            "e": info.timestamp_ms + ttl_ms,
        }
    return json.dumps({"version": SNAPSHOT_VERSION, "entries": entries}, separators=(",", ":")).encode()


def decode_snapshot(blob: bytes, now: Optional[int] = None) -> Dict[str, LocationInfo]:
    """Parse a snapshot, dropping expired and malformed entries."""
    if now is None:
        now = now_ms()

    try:
        data = json.loads(blob)
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning(f"Discarding unreadable cache snapshot: {e}")
        return {}

    if not isinstance(data, dict) or data.get("version") != SNAPSHOT_VERSION:
        logger.warning("Discarding cache snapshot with unknown format")
        return {}

    raw_entries = data.get("entries")
    if not isinstance(raw_entries, dict):
        return {}

    loaded: Dict[str, LocationInfo] = {}
    skipped = 0
    for key, entry in raw_entries.items():
        try:
            expires_at = int(entry["e"])
            if expires_at <= now:
                skipped += 1
                continue
            loaded[key] = LocationInfo.model_validate(entry["v"])
        except (KeyError, TypeError, ValueError, ValidationError):
            skipped += 1

    if skipped:
        logger.debug(f"Skipped {skipped} expired or malformed cache entries")
    return loaded


class CachePersistence:
    """Loads the cache at startup and flushes it periodically."""

    def __init__(
        self,
        store: PersistentStore,
        cache: BoundedCache[str, Optional[LocationInfo]],
        ttl_ms: int = 7 * 24 * 60 * 60 * 1000,
        flush_interval_s: float = 60,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.cache = cache
        self.ttl_ms = ttl_ms
        self.flush_interval_s = flush_interval_s
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    async def load(self) -> int:
        """Merge persisted entries into the cache. Returns how many were loaded."""
        try:
            blob = await self.store.load()
        except OSError as e:
            logger.warning(f"Failed to load cache: {e}")
            return 0
        if not blob:
            return 0

        entries = decode_snapshot(blob, self._clock())
        for key, info in entries.items():
            # Anything already looked up this session is fresher
            if not self.cache.has(key):
                self.cache.set(key, info)
        logger.info(f"Loaded {len(entries)} cached users from storage")
        return len(entries)

    async def flush(self) -> bool:
        try:
            await self.store.save(encode_snapshot(self.cache, self.ttl_ms))
            return True
        except OSError as e:
            logger.error(f"Failed to save cache: {e}")
            return False

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Cancel the periodic flush and write one last snapshot."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval_s)
            await self.flush()
