"""
utils/locking.py — Per-indicator advisory lock for batch runs.

Two batches for the same indicator would race on the same natural keys, so
each batch holds ``<lock_dir>/<indicator>.lock`` for its whole duration.
Acquisition never waits: an overlapping request fails immediately with
BatchAlreadyRunning instead of queueing behind the running batch.

Usage:
    from cnc_pipeline.utils.locking import indicator_lock

    with indicator_lock(Indicator.ICEC):
        ...  # run the batch
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import structlog
from filelock import FileLock, Timeout

from cnc_pipeline.errors import BatchAlreadyRunning
from cnc_shared.config import settings
from cnc_shared.constants import Indicator

log = structlog.get_logger(__name__)


def lock_path(indicator: Indicator, lock_dir: str | Path | None = None) -> Path:
    directory = Path(lock_dir or settings.lock_dir)
    directory.mkdir(parents=True, exist_ok=True)
    return directory / f"{indicator.value}.lock"


@contextmanager
def indicator_lock(
    indicator: Indicator,
    *,
    lock_dir: str | Path | None = None,
) -> Iterator[Path]:
    """
    Hold the indicator's lock for the duration of the ``with`` block.

    Released on every exit path, including exceptions and cancellation.

    Raises:
        BatchAlreadyRunning: if another invocation holds the lock.
    """
    path = lock_path(indicator, lock_dir)
    lock = FileLock(path, timeout=0)
    try:
        lock.acquire()
    except Timeout as exc:
        log.warning("batch_lock_busy", indicator=indicator.value, lock=str(path))
        raise BatchAlreadyRunning(indicator.value) from exc

    log.debug("batch_lock_acquired", indicator=indicator.value, lock=str(path))
    try:
        yield path
    finally:
        lock.release()
        log.debug("batch_lock_released", indicator=indicator.value)
