"""Durable store of last-applied live state.

One JSON document per resource identity under ``STATE_DIR``. Writes go to a
temporary file in the same directory followed by ``os.replace``, so a crash
never leaves a half-written record behind and a restarted controller resumes
from whatever was recorded before the crash.

Access to one identity's record is serialized by a per-identity asyncio.Lock;
different identities are read and written concurrently.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from .config import MAX_STATE_RECORD_SIZE_BYTES
from .graph import ResourceIdentity, ResourceKind
from .provider import LiveStateRecord

logger = logging.getLogger(__name__)

RECORD_SUFFIX = ".json"


class StateStoreError(Exception):
    """Raised when a state record cannot be read or written."""

    pass


def _filename(identity: ResourceIdentity) -> str:
    return f"{identity.kind.value}__{identity.name}{RECORD_SUFFIX}"


def _identity_from_filename(filename: str) -> ResourceIdentity | None:
    if not filename.endswith(RECORD_SUFFIX):
        return None
    stem = filename[: -len(RECORD_SUFFIX)]
    kind, sep, name = stem.partition("__")
    if not sep or not name:
        return None
    try:
        return ResourceIdentity(ResourceKind(kind), name)
    except ValueError:
        return None


class StateStore:
    """File-backed LiveStateRecord store with an in-memory view."""

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = Path(state_dir)
        self._cache: dict[ResourceIdentity, LiveStateRecord] = {}
        self._stale: set[ResourceIdentity] = set()
        self._loaded = False
        self._locks: dict[ResourceIdentity, asyncio.Lock] = {}

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def _lock(self, identity: ResourceIdentity) -> asyncio.Lock:
        lock = self._locks.get(identity)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[identity] = lock
        return lock

    def _path(self, identity: ResourceIdentity) -> Path:
        return self._state_dir / _filename(identity)

    def _read(self, identity: ResourceIdentity) -> LiveStateRecord | None:
        path = self._path(identity)
        if not path.exists():
            return None

        try:
            if path.stat().st_size > MAX_STATE_RECORD_SIZE_BYTES:
                raise StateStoreError(
                    f"State record exceeds maximum size of "
                    f"{MAX_STATE_RECORD_SIZE_BYTES} bytes: {path}"
                )
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StateStoreError(f"Failed to read state record {path}: {e}") from e

        try:
            record = LiveStateRecord.model_validate(data)
        except ValidationError as e:
            raise StateStoreError(f"Corrupt state record {path}: {e}") from e

        if record.identity != identity:
            raise StateStoreError(
                f"State record {path} holds {record.identity}, expected {identity}"
            )
        return record

    def _write(self, record: LiveStateRecord) -> None:
        self._state_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(record.identity)
        payload = json.dumps(
            record.model_dump(mode="json", by_alias=True), indent=2, sort_keys=True
        )

        fd, tmp_name = tempfile.mkstemp(
            dir=self._state_dir, prefix=f".{path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StateStoreError(f"Failed to write state record {path}: {e}") from e

    async def refresh(self) -> None:
        """Reload the in-memory view from disk.

        Raises:
            StateStoreError: If any record is unreadable.
        """
        cache: dict[ResourceIdentity, LiveStateRecord] = {}
        if self._state_dir.exists():
            for path in sorted(self._state_dir.iterdir()):
                identity = _identity_from_filename(path.name)
                if identity is None:
                    continue
                async with self._lock(identity):
                    record = self._read(identity)
                if record is not None:
                    cache[identity] = record

        self._cache = cache
        self._stale.clear()
        self._loaded = True
        logger.debug(
            "Refreshed state store",
            extra={"state_dir": str(self._state_dir), "records": len(cache)},
        )

    def invalidate(self, identity: ResourceIdentity) -> None:
        """Mark the cached view of one identity stale; the next lookup rereads disk."""
        self._stale.add(identity)

    async def lookup(self, identity: ResourceIdentity) -> LiveStateRecord | None:
        """Return the last recorded state for ``identity``, or None."""
        cached = self._cache.get(identity)
        if cached is not None and identity not in self._stale:
            return cached

        async with self._lock(identity):
            record = self._read(identity)
            self._stale.discard(identity)
            if record is None:
                self._cache.pop(identity, None)
            else:
                self._cache[identity] = record
        return record

    async def record(self, identity: ResourceIdentity, live: LiveStateRecord) -> None:
        """Durably record the live state for ``identity``.

        Raises:
            StateStoreError: If the record cannot be written.
        """
        if live.identity != identity:
            raise StateStoreError(f"Cannot record {live.identity} under {identity}")

        async with self._lock(identity):
            self._write(live)
            self._cache[identity] = live
            self._stale.discard(identity)

        logger.debug("Recorded live state", extra={"identity": str(identity)})

    async def remove(self, identity: ResourceIdentity) -> bool:
        """Forget ``identity``. Returns False if nothing was recorded."""
        path = self._path(identity)
        async with self._lock(identity):
            self._cache.pop(identity, None)
            self._stale.discard(identity)
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                raise StateStoreError(f"Failed to remove state record {path}: {e}") from e

        logger.debug("Removed state record", extra={"identity": str(identity)})
        return True

    async def identities(self) -> list[ResourceIdentity]:
        """All recorded identities, sorted."""
        if not self._loaded:
            await self.refresh()
        return sorted(self._cache)

    async def all_records(self) -> dict[ResourceIdentity, LiveStateRecord]:
        """Snapshot of every record, keyed by identity."""
        if not self._loaded:
            await self.refresh()
        return dict(self._cache)
