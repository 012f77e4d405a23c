"""Writer exclusion between watchdog ticks and interactive repairs.

An advisory ``fcntl.flock`` on ``.warden/watchdog.lock`` (the merge queue
locks its own ``merge-queue.json.lock`` the same way). Locks belong to the
open file description, so two ``writer_lock`` blocks in one process exclude
each other too.
"""

from __future__ import annotations

import asyncio
import contextlib
import fcntl
import logging
import os
import time
from collections.abc import AsyncIterator, Iterator
from pathlib import Path

from warden.errors import LockBusy

log = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1


@contextlib.contextmanager
def writer_lock(path: Path, *, timeout: float | None = 0.0) -> Iterator[None]:
    """Hold the exclusive writer lock for the duration of the block.

    ``timeout=0`` tries once; ``None`` waits indefinitely. Raises LockBusy if
    the lock is still held by someone else when the timeout expires.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a+", encoding="utf-8") as handle:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if deadline is not None and time.monotonic() >= deadline:
                    raise LockBusy(f"Writer lock is held by another process: {path}") from None
                time.sleep(_POLL_INTERVAL)
        try:
            handle.seek(0)
            handle.truncate()
            handle.write(f"{os.getpid()}\n")
            handle.flush()
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@contextlib.asynccontextmanager
async def async_writer_lock(path: Path, *, timeout: float | None = 0.0) -> AsyncIterator[None]:
    """``writer_lock`` for coroutines: waits with ``asyncio.sleep`` between attempts."""
    deadline = None if timeout is None else time.monotonic() + timeout
    stack = contextlib.ExitStack()
    while True:
        try:
            stack.enter_context(writer_lock(path, timeout=0))
            break
        except LockBusy:
            if deadline is not None and time.monotonic() >= deadline:
                raise
            await asyncio.sleep(_POLL_INTERVAL)
    with stack:
        yield
