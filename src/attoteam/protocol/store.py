"""Durable state store port with filesystem and in-memory implementations.

Every coordinator component reads and writes team state through a
:class:`StateStore`.  The store guarantees:

* atomic document writes (temp file in the same directory + rename),
* create-if-absent document writes via :meth:`StateStore.create_exclusive`,
* transparent parent directory creation,
* per-file FIFO serialization of read-merge-write cycles within one
  process via :meth:`StateStore.update`.

Cross-process exclusion is layered on top by :mod:`attoteam.protocol.locks`
using :meth:`StateStore.create_marker`.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import shutil
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Protocol, TypeVar, runtime_checkable

from attoteam.errors import StateStoreError
from attoteam.protocol.io import (
    append_jsonl,
    create_json_exclusive,
    ensure_parent,
    read_json,
    read_jsonl,
    read_text,
    write_json_atomic,
    write_text_atomic,
)
from attoteam.protocol.models import utc_now_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class StateStore(Protocol):
    """Storage port injected into every coordinator component."""

    async def read(self, path: Path) -> Any | None: ...

    async def write_atomic(self, path: Path, document: Any) -> None: ...

    async def create_exclusive(self, path: Path, document: Any) -> bool: ...

    async def read_text(self, path: Path) -> str | None: ...

    async def write_text(self, path: Path, text: str) -> None: ...

    async def append_line(self, path: Path, record: dict[str, Any]) -> None: ...

    async def read_lines(self, path: Path) -> list[dict[str, Any]]: ...

    async def list_names(self, directory: Path) -> list[str]: ...

    async def exists(self, path: Path) -> bool: ...

    async def remove(self, path: Path) -> None: ...

    async def create_marker(self, path: Path, owner: str) -> bool: ...

    async def marker_age(self, path: Path) -> float | None: ...

    async def marker_owner(self, path: Path) -> str | None: ...

    async def reclaim_marker(self, path: Path, expected_owner: str | None) -> bool: ...

    def serialized(self, path: Path) -> asyncio.Lock: ...

    async def update(
        self, path: Path, mutate: Callable[[Any | None], Any | Awaitable[Any]],
    ) -> Any: ...


class _SerializedStore:
    """Shared per-path lock registry and read-merge-write helper."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def serialized(self, path: Path) -> asyncio.Lock:
        """Return the FIFO lock guarding *path* in this process."""
        key = str(path)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def update(
        self, path: Path, mutate: Callable[[Any | None], Any | Awaitable[Any]],
    ) -> Any:
        """Read *path*, apply *mutate*, write the result back atomically.

        Concurrent updates to the same path are queued so each one sees
        the previous writer's document.  Returning ``None`` from *mutate*
        skips the write.
        """
        async with self.serialized(path):
            current = await self.read(path)  # type: ignore[attr-defined]
            updated = mutate(current)
            if asyncio.iscoroutine(updated):
                updated = await updated
            if updated is not None:
                await self.write_atomic(path, updated)  # type: ignore[attr-defined]
            return updated


class FileStateStore(_SerializedStore):
    """State store backed by the local filesystem."""

    async def read(self, path: Path) -> Any | None:
        return read_json(path, None)

    async def write_atomic(self, path: Path, document: Any) -> None:
        write_json_atomic(path, document)

    async def create_exclusive(self, path: Path, document: Any) -> bool:
        return create_json_exclusive(path, document)

    async def read_text(self, path: Path) -> str | None:
        return read_text(path)

    async def write_text(self, path: Path, text: str) -> None:
        write_text_atomic(path, text)

    async def append_line(self, path: Path, record: dict[str, Any]) -> None:
        async with self.serialized(path):
            append_jsonl(path, record)

    async def read_lines(self, path: Path) -> list[dict[str, Any]]:
        return read_jsonl(path)

    async def list_names(self, directory: Path) -> list[str]:
        try:
            return sorted(entry.name for entry in directory.iterdir())
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise StateStoreError(f"Cannot list {directory}: {exc}", path=str(directory)) from exc

    async def exists(self, path: Path) -> bool:
        return path.exists()

    async def remove(self, path: Path) -> None:
        try:
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StateStoreError(f"Cannot remove {path}: {exc}", path=str(path)) from exc

    async def create_marker(self, path: Path, owner: str) -> bool:
        ensure_parent(path)
        try:
            os.mkdir(path)
        except FileExistsError:
            return False
        except OSError as exc:
            raise StateStoreError(f"Cannot create lock marker {path}: {exc}", path=str(path)) from exc
        owner_doc = {"owner": owner, "pid": os.getpid(), "acquired_at": utc_now_iso()}
        try:
            (path / "owner").write_text(json.dumps(owner_doc), encoding="utf-8")
        except OSError as exc:
            shutil.rmtree(path, ignore_errors=True)
            raise StateStoreError(
                f"Cannot record owner of lock marker {path}: {exc}", path=str(path),
            ) from exc
        return True

    async def marker_age(self, path: Path) -> float | None:
        try:
            return max(0.0, time.time() - path.stat().st_mtime)
        except FileNotFoundError:
            return None

    async def marker_owner(self, path: Path) -> str | None:
        """Raw owner record of the marker at *path* (``None`` if unreadable)."""
        try:
            return (path / "owner").read_text(encoding="utf-8")
        except OSError:
            return None

    async def reclaim_marker(self, path: Path, expected_owner: str | None) -> bool:
        """Remove a stale marker only if it still belongs to *expected_owner*.

        The marker is renamed aside first, so of several concurrent
        reclaimers exactly one gets it.  If the renamed marker turns out to
        be a fresh one, it is moved back.
        """
        tombstone = path.with_name(f"{path.name}.reclaim.{os.getpid()}.{time.time_ns()}")
        try:
            os.rename(path, tombstone)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StateStoreError(f"Cannot reclaim lock marker {path}: {exc}", path=str(path)) from exc
        if await self.marker_owner(tombstone) != expected_owner:
            try:
                os.rename(tombstone, path)
            except OSError:
                logger.warning("Lock marker %s changed hands while being reclaimed", path)
                shutil.rmtree(tombstone, ignore_errors=True)
            return False
        shutil.rmtree(tombstone, ignore_errors=True)
        return True


class MemoryStateStore(_SerializedStore):
    """In-memory state store for tests.

    Documents are JSON round-tripped on the way in and deep-copied on the
    way out, so callers can never alias stored state.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__()
        self._clock = clock
        self.documents: dict[str, Any] = {}
        self.texts: dict[str, str] = {}
        self.markers: dict[str, tuple[str, float]] = {}

    async def read(self, path: Path) -> Any | None:
        doc = self.documents.get(str(path))
        return copy.deepcopy(doc) if doc is not None else None

    async def write_atomic(self, path: Path, document: Any) -> None:
        self.documents[str(path)] = json.loads(json.dumps(document))

    async def create_exclusive(self, path: Path, document: Any) -> bool:
        if str(path) in self.documents:
            return False
        await self.write_atomic(path, document)
        return True

    async def read_text(self, path: Path) -> str | None:
        return self.texts.get(str(path))

    async def write_text(self, path: Path, text: str) -> None:
        self.texts[str(path)] = text

    async def append_line(self, path: Path, record: dict[str, Any]) -> None:
        key = str(path)
        self.texts[key] = self.texts.get(key, "") + json.dumps(record) + "\n"

    async def read_lines(self, path: Path) -> list[dict[str, Any]]:
        raw = self.texts.get(str(path), "")
        return [json.loads(line) for line in raw.splitlines() if line.strip()]

    async def list_names(self, directory: Path) -> list[str]:
        prefix = str(directory).rstrip("/") + "/"
        names: set[str] = set()
        for key in self._all_keys():
            if key.startswith(prefix):
                names.add(key[len(prefix):].split("/", 1)[0])
        return sorted(names)

    async def exists(self, path: Path) -> bool:
        key = str(path)
        prefix = key.rstrip("/") + "/"
        return any(k == key or k.startswith(prefix) for k in self._all_keys())

    async def remove(self, path: Path) -> None:
        key = str(path)
        prefix = key.rstrip("/") + "/"
        for table in (self.documents, self.texts, self.markers):
            for k in [k for k in table if k == key or k.startswith(prefix)]:
                del table[k]

    async def create_marker(self, path: Path, owner: str) -> bool:
        key = str(path)
        if key in self.markers:
            return False
        self.markers[key] = (owner, self._clock())
        return True

    async def marker_age(self, path: Path) -> float | None:
        entry = self.markers.get(str(path))
        if entry is None:
            return None
        return max(0.0, self._clock() - entry[1])

    async def marker_owner(self, path: Path) -> str | None:
        entry = self.markers.get(str(path))
        if entry is None:
            return None
        owner, created = entry
        return f"{owner}@{created}"

    async def reclaim_marker(self, path: Path, expected_owner: str | None) -> bool:
        key = str(path)
        if key not in self.markers or await self.marker_owner(path) != expected_owner:
            return False
        del self.markers[key]
        return True

    def _all_keys(self) -> list[str]:
        return [*self.documents, *self.texts, *self.markers]
