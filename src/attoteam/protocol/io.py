"""Protocol IO helpers with atomic writes."""

from __future__ import annotations

import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any

from attoteam.errors import StateStoreError

logger = logging.getLogger(__name__)


def ensure_parent(path: Path) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise StateStoreError(f"Cannot create directory {path.parent}: {exc}", path=str(path)) from exc


def _temp_path(path: Path) -> Path:
    # Unique per writer so concurrent processes never share a temp file.
    return path.with_name(f".{path.name}.{os.getpid()}.{uuid.uuid4().hex[:8]}.tmp")


def read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise StateStoreError(f"Cannot read {path}: {exc}", path=str(path)) from exc


def read_json(path: Path, default: Any = None) -> Any:
    raw = read_text(path)
    if raw is None:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed JSON document at %s", path)
        return default


def write_text_atomic(path: Path, text: str) -> None:
    ensure_parent(path)
    tmp = _temp_path(path)
    try:
        with tmp.open("w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    except OSError as exc:
        tmp.unlink(missing_ok=True)
        raise StateStoreError(f"Cannot write {path}: {exc}", path=str(path)) from exc


def write_json_atomic(path: Path, data: Any) -> None:
    write_text_atomic(path, json.dumps(data, indent=2, sort_keys=False) + "\n")


def create_json_exclusive(path: Path, data: Any) -> bool:
    """Write *data* to *path* only if nothing exists there yet.

    The document is written in full to a temp file and hard-linked into
    place, so readers never see a partial file and an existing document is
    never replaced.  Returns ``False`` when *path* already exists.
    """
    ensure_parent(path)
    tmp = _temp_path(path)
    try:
        with tmp.open("w", encoding="utf-8") as handle:
            handle.write(json.dumps(data, indent=2, sort_keys=False) + "\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.link(tmp, path)
    except FileExistsError:
        return False
    except OSError as exc:
        raise StateStoreError(f"Cannot create {path}: {exc}", path=str(path)) from exc
    finally:
        tmp.unlink(missing_ok=True)
    return True


def append_jsonl(path: Path, item: Any) -> None:
    ensure_parent(path)
    try:
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(item) + "\n")
    except OSError as exc:
        raise StateStoreError(f"Cannot append to {path}: {exc}", path=str(path)) from exc


def read_jsonl(path: Path) -> list[dict[str, Any]]:
    raw = read_text(path)
    if not raw:
        return []
    items: list[dict[str, Any]] = []
    for line in raw.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            item = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(item, dict):
            items.append(item)
    return items
