"""Cross-process exclusion locks built on marker directories.

Acquisition is an atomic create-if-absent of a marker through the state
store; contention is retried with tenacity.  Release always removes the
marker, even when the guarded body raises.
"""

from __future__ import annotations

import contextlib
import logging
import os
import uuid
from collections.abc import AsyncIterator
from pathlib import Path

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_delay,
    stop_never,
    wait_fixed,
)

from attoteam.errors import LockTimeoutError
from attoteam.protocol.store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.05


class _LockBusy(Exception):
    """Marker already present; retried by tenacity."""


async def _try_acquire(
    store: StateStore, marker: Path, owner: str, stale_after: float | None,
) -> None:
    if await store.create_marker(marker, owner):
        return
    if stale_after is not None:
        stale_owner = await store.marker_owner(marker)
        age = await store.marker_age(marker)
        # Only the marker observed as stale may be removed; a concurrent
        # reclaimer's fresh marker has a different owner record.
        if age is not None and age > stale_after and await store.reclaim_marker(marker, stale_owner):
            logger.warning(
                "Reclaimed stale lock %s (age %.1fs > %.1fs)", marker, age, stale_after,
            )
            if await store.create_marker(marker, owner):
                return
    raise _LockBusy(str(marker))


@contextlib.asynccontextmanager
async def exclusion_lock(
    store: StateStore,
    marker: Path,
    *,
    owner: str | None = None,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    timeout: float | None = None,
    stale_after: float | None = None,
    timeout_hint: str | None = None,
) -> AsyncIterator[str]:
    """Hold the marker lock at *marker* for the duration of the block.

    Args:
        store: State store providing ``create_marker``.
        marker: Lock marker path.
        owner: Owner label written into the marker.
        poll_interval: Seconds between acquisition attempts.
        timeout: Give up after this many seconds (``None`` waits forever).
        stale_after: Markers older than this many seconds are reclaimed
            (``None`` never reclaims).
        timeout_hint: Appended to the :class:`LockTimeoutError` message.
    """
    owner = owner or f"{os.getpid()}.{uuid.uuid4().hex[:8]}"
    retrying = AsyncRetrying(
        stop=stop_after_delay(timeout) if timeout is not None else stop_never,
        wait=wait_fixed(poll_interval),
        retry=retry_if_exception_type(_LockBusy),
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                await _try_acquire(store, marker, owner, stale_after)
    except _LockBusy:
        raise LockTimeoutError(str(marker), timeout or 0.0, hint=timeout_hint) from None

    logger.debug("Acquired lock %s as %s", marker, owner)
    try:
        yield owner
    finally:
        await store.remove(marker)
        logger.debug("Released lock %s", marker)


def clamp_timeout_ms(raw: str | int | None, *, default: int, minimum: int, maximum: int) -> int:
    """Parse a millisecond timeout from env/config and clamp it into range."""
    if raw is None or raw == "":
        return default
    try:
        value = int(float(raw))
    except (TypeError, ValueError):
        return default
    return min(maximum, max(minimum, value))
